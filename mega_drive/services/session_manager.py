"""
Session state machine.

Anonymous -> HandshakePending -> Authenticated -> Closed.

Pure (no I/O): AuthService exchanges the login commands and feeds the
answers in here. The manager owns the session's key material and its
sequence counter, and is the only place that hands them out.
"""

from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from mega_drive.api.dispatcher import SequenceCounter
from mega_drive.config import MegaDriveConfig
from mega_drive.crypto.aes import decrypt_key_blob, encrypt_key_blob
from mega_drive.crypto.encoding import b64url_decode, b64url_encode
from mega_drive.crypto.kdf import derive_master_key, derive_v2, user_hash_v1
from mega_drive.crypto.rsa import RsaPrivateKey, load_private_key, rsa_decrypt
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import (
    AuthenticationError,
    BadSecretError,
    KeyFormatError,
    NotAuthenticatedError,
    ProtocolMismatchError,
    RsaError,
)
from mega_drive.models.auth import LoginChallenge, PreloginInfo, Session, SessionState
from mega_drive.models.crypto import AES_KEY_SIZE

logger = structlog.get_logger(__name__)

SESSION_ID_SIZE = 43
_TSID_MIN_SIZE = 2 * AES_KEY_SIZE


class SessionManager:
    """
    Owns the session of one account.

    Only an Authenticated session hands out the master key or the RSA
    private key; every other state raises NotAuthenticatedError.
    """

    def __init__(
        self,
        config: MegaDriveConfig | None = None,
        *,
        sequence_start: int | None = None,
    ) -> None:
        self._config = config or MegaDriveConfig()
        self._state = SessionState.ANONYMOUS
        self._sequence = SequenceCounter(sequence_start)

        self._identity: str | None = None
        self._prelogin: PreloginInfo | None = None
        self._password_key: SecureBytes | None = None
        self._session: Session | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    @property
    def sequence(self) -> SequenceCounter:
        return self._sequence

    @property
    def session_id(self) -> str | None:
        """Session id for outgoing batches; None before login completes."""
        if self._state is SessionState.CLOSED:
            msg = "Session is closed"
            raise NotAuthenticatedError(msg)
        if self._session is None:
            return None
        return self._session.session_id

    @property
    def session(self) -> Session:
        self._require_authenticated()
        return self._session

    def master_key(self) -> bytes:
        self._require_authenticated()
        return self._session.master_key

    def private_key(self) -> RsaPrivateKey:
        self._require_authenticated()
        return self._session.private_key

    def begin_login(self, identity: str, prelogin: PreloginInfo) -> None:
        """
        Start a handshake for identity with the server's prelogin answer.

        Raises:
            AuthenticationError: If the session is already authenticated or closed.
        """
        if self._state not in (SessionState.ANONYMOUS, SessionState.HANDSHAKE_PENDING):
            msg = f"Cannot start login from state {self._state.value}"
            raise AuthenticationError(msg)
        self._wipe_handshake()
        self._identity = identity.lower()
        self._prelogin = prelogin
        self._state = SessionState.HANDSHAKE_PENDING
        logger.debug("Login started", version=prelogin.version)

    def login_proof(self, secret: str | bytes | SecureBytes) -> str:
        """
        Derive the password key and the user hash sent with the login command.

        CPU bound (key stretching); the derived key is kept until
        complete_login so it is only computed once.
        """
        if self._state is not SessionState.HANDSHAKE_PENDING:
            msg = "No login in progress"
            raise AuthenticationError(msg)

        with _as_secure(secret) as material:
            if self._prelogin.version == 2:
                password_key, user_hash = derive_v2(
                    material,
                    b64url_decode(self._prelogin.salt),
                    self._config.pbkdf2_iterations,
                )
            else:
                password_key = derive_master_key(material, self._config.key_derivation_rounds)
                user_hash = user_hash_v1(self._identity, password_key)

        if self._password_key is not None:
            self._password_key.clear()
        self._password_key = SecureBytes(password_key)
        return user_hash

    def complete_login(
        self, challenge_response: LoginChallenge, secret: str | bytes | SecureBytes
    ) -> Session:
        """
        Unlock the account keys and establish the session.

        Args:
            challenge_response: Decoded answer to the login command.
            secret: The user secret (unused if login_proof already derived the key).

        Returns:
            The authenticated Session.

        Raises:
            BadSecretError: If the secret does not unlock the keys.
            ProtocolMismatchError: If the answer has an unrecognized shape.
        """
        if self._state is not SessionState.HANDSHAKE_PENDING:
            msg = "No login in progress"
            raise AuthenticationError(msg)

        try:
            if self._password_key is None:
                self.login_proof(secret)
            session = self._unlock(challenge_response, bytes(self._password_key))
        except (BadSecretError, ProtocolMismatchError):
            self.abort()
            raise

        self._wipe_handshake()
        self._session = session
        self._state = SessionState.AUTHENTICATED
        logger.info(
            "Session established",
            ephemeral=not session.has_private_key,
        )
        return session

    def abort(self) -> None:
        """Drop a pending handshake and return to Anonymous."""
        if self._state is SessionState.HANDSHAKE_PENDING:
            self._wipe_handshake()
            self._state = SessionState.ANONYMOUS

    def close(self) -> None:
        """Zero all key material. Idempotent."""
        self._wipe_handshake()
        if self._session is not None:
            self._session.wipe()
            self._session = None
        self._state = SessionState.CLOSED
        logger.debug("Session closed")

    def _unlock(self, challenge: LoginChallenge, password_key: bytes) -> Session:
        if not challenge.master_key:
            msg = "Login response carries no master key"
            raise ProtocolMismatchError(msg)

        master_key = _unwrap(challenge.master_key, password_key, "master key")
        if len(master_key) != AES_KEY_SIZE:
            msg = "Master key has an unexpected length"
            raise ProtocolMismatchError(msg, size=len(master_key))

        if challenge.tsid:
            session_id = self._confirm_temporary(challenge.tsid, master_key)
            private_key = None
        elif challenge.csid and challenge.private_key:
            private_key = self._unlock_private_key(challenge.private_key, master_key)
            try:
                session_id = self._decrypt_session_id(challenge.csid, private_key)
            except (BadSecretError, ProtocolMismatchError):
                private_key.clear()
                raise
        else:
            msg = "Login response carries neither tsid nor csid/privk"
            raise ProtocolMismatchError(msg)

        return Session(
            session_id=session_id,
            user_handle=challenge.user_handle or "",
            sequence=self._sequence,
            _master_key=SecureBytes(master_key),
            _private_key=private_key,
        )

    @staticmethod
    def _confirm_temporary(tsid: str, master_key: bytes) -> str:
        raw = _decode(tsid, "tsid")
        if len(raw) < _TSID_MIN_SIZE:
            msg = "tsid too short"
            raise ProtocolMismatchError(msg, size=len(raw))
        if encrypt_key_blob(raw[:AES_KEY_SIZE], master_key) != raw[-AES_KEY_SIZE:]:
            msg = "Secret does not match the temporary session"
            raise BadSecretError(msg)
        return tsid

    @staticmethod
    def _unlock_private_key(wrapped: str, master_key: bytes) -> RsaPrivateKey:
        blob = _unwrap(wrapped, master_key, "private key")
        try:
            return load_private_key(blob)
        except (KeyFormatError, RsaError) as e:
            msg = "Secret does not unlock the private key"
            raise BadSecretError(msg) from e

    @staticmethod
    def _decrypt_session_id(csid: str, private_key: RsaPrivateKey) -> str:
        try:
            plaintext = rsa_decrypt(_decode(csid, "csid"), private_key)
        except RsaError as e:
            msg = "Session id does not decrypt with the private key"
            raise BadSecretError(msg) from e
        if len(plaintext) < SESSION_ID_SIZE:
            msg = "Decrypted session id too short"
            raise BadSecretError(msg, size=len(plaintext))
        return b64url_encode(plaintext[:SESSION_ID_SIZE])

    def _require_authenticated(self) -> None:
        if self._state is not SessionState.AUTHENTICATED or self._session is None:
            msg = f"Session is {self._state.value}"
            raise NotAuthenticatedError(msg)

    def _wipe_handshake(self) -> None:
        if self._password_key is not None:
            self._password_key.clear()
            self._password_key = None
        self._identity = None
        self._prelogin = None


def _decode(value: str, what: str) -> bytes:
    try:
        return b64url_decode(value)
    except KeyFormatError as e:
        msg = f"Login response {what} is not valid base64"
        raise ProtocolMismatchError(msg) from e


def _unwrap(value: str, wrapping_key: bytes, what: str) -> bytes:
    try:
        return decrypt_key_blob(_decode(value, what), wrapping_key)
    except KeyFormatError as e:
        msg = f"Login response {what} has an invalid length"
        raise ProtocolMismatchError(msg) from e


@contextmanager
def _as_secure(secret: str | bytes | SecureBytes) -> Iterator[SecureBytes]:
    """Yield the secret as SecureBytes, zeroing any copy made here."""
    if isinstance(secret, SecureBytes):
        yield secret
        return
    value = SecureBytes.from_string(secret) if isinstance(secret, str) else SecureBytes(secret)
    try:
        yield value
    finally:
        value.clear()
