"""
MEGA drive Python client.

An async Python client for MEGA with client-side encryption.

Example:
    ```python
    from mega_drive import MegaDriveClient

    async with MegaDriveClient() as client:
        await client.authenticate("user@example.com", "password")

        # List files
        await client.refresh_tree()
        print(client.format_tree())

        # Upload and download
        await client.upload("/docs", "notes.txt", b"hello")
        await client.download_to_file("/docs/notes.txt", "notes.txt")
    ```
"""

from mega_drive.client import MegaDriveClient
from mega_drive.config import MegaDriveConfig
from mega_drive.exceptions import (
    AccessDeniedError,
    AuthenticationError,
    BadSecretError,
    BatchCancelledError,
    CommandError,
    CryptoError,
    CycleError,
    DispatchError,
    IntegrityFailureError,
    KeyFormatError,
    KeyUndecryptableError,
    MegaDriveError,
    NotAuthenticatedError,
    NotFoundError,
    OrphanNodeError,
    ProtocolMismatchError,
    QuotaExceededError,
    RateLimitError,
    ResponseMismatchError,
    SequenceDesyncError,
    SessionExpiredError,
    TemporarilyUnavailableError,
    TransferCancelledError,
    TransferError,
    TransportError,
    TreeError,
    TruncatedResponseError,
    UnknownNodeError,
    UploadError,
)
from mega_drive.models.drive import ListingReport, Node, NodeKind, TransferState

__version__ = "0.1.0"

__all__ = [
    # Main client
    "MegaDriveClient",
    "MegaDriveConfig",
    # Models
    "Node",
    "NodeKind",
    "ListingReport",
    "TransferState",
    # Exceptions
    "MegaDriveError",
    "AuthenticationError",
    "BadSecretError",
    "ProtocolMismatchError",
    "NotAuthenticatedError",
    "CryptoError",
    "KeyFormatError",
    "DispatchError",
    "TransportError",
    "TruncatedResponseError",
    "ResponseMismatchError",
    "SequenceDesyncError",
    "BatchCancelledError",
    "CommandError",
    "TemporarilyUnavailableError",
    "RateLimitError",
    "NotFoundError",
    "AccessDeniedError",
    "QuotaExceededError",
    "SessionExpiredError",
    "TreeError",
    "UnknownNodeError",
    "KeyUndecryptableError",
    "CycleError",
    "OrphanNodeError",
    "TransferError",
    "IntegrityFailureError",
    "TransferCancelledError",
    "UploadError",
]
