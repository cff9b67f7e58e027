"""
MEGA drive exception hierarchy.

All exceptions inherit from MegaDriveError for easy catching.
"""

from typing import Any


class MegaDriveError(Exception):
    """Base exception for all mega_drive errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class AuthenticationError(MegaDriveError):
    """Authentication failed."""


class BadSecretError(AuthenticationError):
    """The secret did not unlock the account keys."""


class ProtocolMismatchError(AuthenticationError):
    """The login response has an unrecognized shape."""


class NotAuthenticatedError(AuthenticationError):
    """Key material was requested from a session that is not authenticated."""


class CryptoError(MegaDriveError):
    """Cryptographic operation failed."""


class KeyFormatError(CryptoError):
    """Key material has a malformed length or encoding."""


class RsaError(CryptoError):
    """RSA key parsing or decryption failed."""


class DispatchError(MegaDriveError):
    """A command batch could not be exchanged or demultiplexed."""


class TransportError(DispatchError):
    """The transport failed to deliver a batch or a byte range."""


class TruncatedResponseError(DispatchError):
    """The response array is shorter than the submitted batch."""


class ResponseMismatchError(DispatchError):
    """A response entry does not match the command at its position."""


class SequenceDesyncError(DispatchError):
    """Sequence numbering is no longer consistent with the server; a new session is required."""


class BatchCancelledError(DispatchError):
    """The command was cancelled before its batch was sent."""


class CommandError(DispatchError):
    """The server rejected a single command with a negative result code."""

    def __init__(
        self,
        message: str,
        *,
        code: int,
        opcode: str | None = None,
        sequence: int | None = None,
    ) -> None:
        super().__init__(message, code=code, opcode=opcode, sequence=sequence)
        self.code = code
        self.opcode = opcode
        self.sequence = sequence

    @property
    def is_transient(self) -> bool:
        return False


class TemporarilyUnavailableError(CommandError):
    """Server congestion or a temporarily unavailable resource (EAGAIN, ETEMPUNAVAIL)."""

    @property
    def is_transient(self) -> bool:
        return True


class RateLimitError(CommandError):
    """Command weight quota exceeded (ERATELIMIT)."""

    @property
    def is_transient(self) -> bool:
        return True


class InvalidRequestError(CommandError):
    """Malformed command arguments (EARGS)."""


class NotFoundError(CommandError):
    """Object not found (ENOENT)."""


class AccessDeniedError(CommandError):
    """Access violation (EACCESS)."""


class QuotaExceededError(CommandError):
    """Storage or transfer quota exceeded (EOVERQUOTA)."""


class SessionExpiredError(CommandError):
    """Invalid or expired session id (ESID)."""


class TreeError(MegaDriveError):
    """Node tree operation failed."""

    def __init__(self, message: str, *, node_id: str | None = None, **context: Any) -> None:
        super().__init__(message, node_id=node_id, **context)
        self.node_id = node_id


class UnknownNodeError(TreeError):
    """The node id is not present in the tree."""


class KeyUndecryptableError(TreeError):
    """No available key can unwrap the node key."""


class CycleError(TreeError):
    """Parent traversal revisited a node."""


class OrphanNodeError(TreeError):
    """A node record whose parent never arrived during listing."""

    def __init__(self, message: str, *, node_id: str, parent_id: str | None) -> None:
        super().__init__(message, node_id=node_id, parent_id=parent_id)
        self.parent_id = parent_id


class TransferError(MegaDriveError):
    """File transfer failed."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        chunk_index: int | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, node_id=node_id, chunk_index=chunk_index, **context)
        self.node_id = node_id
        self.chunk_index = chunk_index


class IntegrityFailureError(TransferError):
    """The condensed MAC does not match the expected value."""


class TransferCancelledError(TransferError):
    """The transfer was cancelled at a chunk boundary."""


class UploadError(TransferError):
    """The storage server rejected an upload chunk."""
