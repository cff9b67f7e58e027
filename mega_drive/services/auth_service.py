"""
Authentication service for MEGA drive.

Runs the prelogin / login exchange over the dispatcher and hands the
answers to the SessionManager.
"""

import asyncio

import structlog

from mega_drive.api import commands
from mega_drive.api.dispatcher import CommandDispatcher
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import (
    AuthenticationError,
    BadSecretError,
    MegaDriveError,
    NotAuthenticatedError,
    NotFoundError,
)
from mega_drive.models.auth import LoginChallenge, PreloginInfo, Session, UserInfo
from mega_drive.services.session_manager import SessionManager

logger = structlog.get_logger(__name__)


class AuthService:
    """
    Handles MEGA authentication.

    Concurrency:
    - authenticate() and logout() are serialized by an internal lock
    - the password only lives in a SecureBytes buffer for the duration of authenticate()
    """

    def __init__(self, dispatcher: CommandDispatcher, session_manager: SessionManager) -> None:
        """
        Args:
            dispatcher: Dispatcher bound to session_manager.
            session_manager: Owner of the session state.
        """
        self._dispatcher = dispatcher
        self._sessions = session_manager
        self._lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self._sessions.is_authenticated

    async def authenticate(self, email: str, password: str) -> Session:
        """
        Log in with email and password.

        Args:
            email: Account e-mail.
            password: Account password.

        Returns:
            The authenticated Session.

        Raises:
            BadSecretError: If the credentials are empty or wrong.
            ProtocolMismatchError: If the server answers with an unknown shape.
            AuthenticationError: If authentication fails for another reason.
        """
        if len(email) == 0 or len(password) == 0:
            msg = "Email and password required"
            raise BadSecretError(msg)

        logger.info("Starting authentication")

        async with self._lock:
            with SecureBytes.from_string(password) as secret:
                try:
                    return await self._login(email, secret)
                except MegaDriveError:
                    self._sessions.abort()
                    raise
                except Exception as e:
                    self._sessions.abort()
                    msg = "Authentication failed"
                    logger.error(msg, error_type=type(e).__name__)
                    raise AuthenticationError(msg) from e

    async def _login(self, email: str, secret: SecureBytes) -> Session:
        prelogin = await self._dispatcher.execute(commands.prelogin(email))
        if not isinstance(prelogin, PreloginInfo):
            msg = "Unexpected prelogin result"
            raise AuthenticationError(msg)
        self._sessions.begin_login(email, prelogin)

        user_hash = await asyncio.to_thread(self._sessions.login_proof, secret)

        try:
            challenge = await self._dispatcher.execute(commands.login(email, user_hash))
        except NotFoundError as e:
            msg = "Invalid email or password"
            raise BadSecretError(msg) from e
        if not isinstance(challenge, LoginChallenge):
            msg = "Unexpected login result"
            raise AuthenticationError(msg)

        session = await asyncio.to_thread(self._sessions.complete_login, challenge, secret)
        logger.info("Authentication successful", user=session.user_handle)
        return session

    async def user_info(self) -> UserInfo:
        """Fetch account details of the authenticated user."""
        if not self._sessions.is_authenticated:
            msg = "Not authenticated. Call authenticate() first."
            raise NotAuthenticatedError(msg)
        result = await self._dispatcher.execute(commands.user_info())
        if not isinstance(result, UserInfo):
            msg = "Unexpected user info result"
            raise AuthenticationError(msg)
        return result

    async def logout(self) -> None:
        """Invalidate the session on the server and zero local key material."""
        logger.info("Logging out")

        async with self._lock:
            if self._sessions.is_authenticated:
                try:
                    await self._dispatcher.execute(commands.logout())
                except MegaDriveError as e:
                    logger.warning("Logout request failed", error_type=type(e).__name__)
            self._sessions.close()
