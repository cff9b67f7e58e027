"""
Domain models for MEGA drive.

These are immutable (frozen) dataclasses representing the core domain concepts.
"""

from mega_drive.models.auth import (
    LoginChallenge,
    PreloginInfo,
    Session,
    SessionState,
    UserInfo,
)
from mega_drive.models.commands import (
    Ack,
    Command,
    CommandResult,
    CreatedNodes,
    DownloadLocator,
    Opcode,
    TreeListing,
    UploadLocator,
)
from mega_drive.models.crypto import CounterState, FileKey, MacState
from mega_drive.models.drive import (
    ListingReport,
    Node,
    NodeAttributes,
    NodeKind,
    NodeRecord,
    TransferChunk,
    TransferState,
    UploadResult,
)

__all__ = [
    # Auth
    "SessionState",
    "Session",
    "PreloginInfo",
    "LoginChallenge",
    "UserInfo",
    # Commands
    "Opcode",
    "Command",
    "CommandResult",
    "Ack",
    "TreeListing",
    "DownloadLocator",
    "UploadLocator",
    "CreatedNodes",
    # Crypto
    "FileKey",
    "CounterState",
    "MacState",
    # Drive
    "NodeKind",
    "NodeRecord",
    "NodeAttributes",
    "Node",
    "TransferChunk",
    "ListingReport",
    "TransferState",
    "UploadResult",
]
