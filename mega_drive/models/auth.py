"""
Authentication-related domain models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mega_drive.crypto.rsa import RsaPrivateKey
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import NotAuthenticatedError

if TYPE_CHECKING:
    from mega_drive.api.dispatcher import SequenceCounter


class SessionState(StrEnum):
    """Lifecycle of a session."""

    ANONYMOUS = "anonymous"
    HANDSHAKE_PENDING = "handshake_pending"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(frozen=True, kw_only=True)
class PreloginInfo:
    """
    Server answer to the prelogin (``us0``) command.

    Attributes:
        version: Account version, 1 (AES key stretching) or 2 (PBKDF2).
        salt: Base64url PBKDF2 salt, v2 accounts only.
    """

    version: int
    salt: str | None = None

    def __post_init__(self) -> None:
        if self.version not in (1, 2):
            msg = f"Unsupported account version: {self.version}"
            raise ValueError(msg)
        if self.version == 2 and not self.salt:
            msg = "v2 accounts require a salt"
            raise ValueError(msg)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PreloginInfo":
        return cls(version=int(data.get("v", 1)), salt=data.get("s") or None)


@dataclass(frozen=True, kw_only=True)
class LoginChallenge:
    """
    Server answer to the login (``us``) command.

    Fields are kept as received; the session manager decides whether the
    shape is usable.

    Attributes:
        master_key: Master key wrapped with the password key (``k``).
        private_key: RSA private key wrapped with the master key (``privk``).
        csid: Session id encrypted with the RSA public key.
        tsid: Temporary session id, self-authenticated by the master key.
        user_handle: Account handle (``u``).
    """

    master_key: str | None = field(default=None, repr=False)
    private_key: str | None = field(default=None, repr=False)
    csid: str | None = field(default=None, repr=False)
    tsid: str | None = field(default=None, repr=False)
    user_handle: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "LoginChallenge":
        return cls(
            master_key=data.get("k"),
            private_key=data.get("privk"),
            csid=data.get("csid"),
            tsid=data.get("tsid"),
            user_handle=data.get("u"),
        )


@dataclass(frozen=True, kw_only=True)
class Session:
    """
    An authenticated MEGA session.

    Key material is only readable while the session is open: once the
    session manager closes it, the buffers are zeroed and accessors raise
    NotAuthenticatedError.

    Attributes:
        session_id: Opaque id sent as ``sid`` with every batch.
        user_handle: Account handle.
        sequence: Per-session command sequence counter.
        created_at: When the session was established.
    """

    session_id: str = field(repr=False)
    user_handle: str
    sequence: "SequenceCounter"
    _master_key: SecureBytes = field(repr=False)
    _private_key: RsaPrivateKey | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_open(self) -> bool:
        return not self._master_key.is_cleared

    @property
    def master_key(self) -> bytes:
        if not self.is_open:
            msg = "Session is closed"
            raise NotAuthenticatedError(msg)
        return bytes(self._master_key)

    @property
    def private_key(self) -> RsaPrivateKey:
        if not self.is_open:
            msg = "Session is closed"
            raise NotAuthenticatedError(msg)
        if self._private_key is None:
            msg = "Ephemeral session has no RSA key"
            raise NotAuthenticatedError(msg)
        return self._private_key

    @property
    def has_private_key(self) -> bool:
        return self._private_key is not None and not self._private_key.is_cleared

    def wipe(self) -> None:
        """Zero all key material held by the session."""
        self._master_key.clear()
        if self._private_key is not None:
            self._private_key.clear()


@dataclass(frozen=True, kw_only=True)
class UserInfo:
    """
    Account details returned by ``ug``.

    Attributes:
        user_handle: Account handle.
        email: Account e-mail.
        name: Display name, if set.
    """

    user_handle: str
    email: str = ""
    name: str | None = None
