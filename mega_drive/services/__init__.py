"""
Business logic services for MEGA drive.
"""

from mega_drive.services.auth_service import AuthService
from mega_drive.services.file_service import FileService
from mega_drive.services.node_tree import NodeTree
from mega_drive.services.session_manager import SessionManager
from mega_drive.services.transfer_engine import TransferEngine
from mega_drive.services.tree_service import TreeService

__all__ = [
    "AuthService",
    "FileService",
    "NodeTree",
    "SessionManager",
    "TransferEngine",
    "TreeService",
]
