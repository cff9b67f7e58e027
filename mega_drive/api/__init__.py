"""
MEGA API layer: transport, command codec and dispatcher.
"""

from mega_drive.api.dispatcher import CommandDispatcher, PendingHandle, SequenceCounter
from mega_drive.api.http_client import AsyncHttpClient
from mega_drive.api.transport import Transport

__all__ = [
    "AsyncHttpClient",
    "CommandDispatcher",
    "PendingHandle",
    "SequenceCounter",
    "Transport",
]
