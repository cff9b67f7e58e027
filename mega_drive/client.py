"""
MEGA drive client facade.

This is the main entry point for users of the library. It wires the HTTP
transport, the session, the command dispatcher and the services together
behind one async API.
"""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterable
from contextlib import aclosing
from pathlib import Path
from typing import Self

import httpx
import structlog

from mega_drive.api.dispatcher import CommandDispatcher
from mega_drive.api.http_client import AsyncHttpClient
from mega_drive.config import MegaDriveConfig
from mega_drive.exceptions import NotAuthenticatedError
from mega_drive.models.auth import Session, SessionState, UserInfo
from mega_drive.models.drive import ListingReport, Node, TransferState
from mega_drive.services.auth_service import AuthService
from mega_drive.services.file_service import FileService
from mega_drive.services.session_manager import SessionManager
from mega_drive.services.transfer_engine import Checkpoint, TransferEngine
from mega_drive.services.tree_service import TreeService

logger = structlog.get_logger(__name__)


class MegaDriveClient:
    """
    Async client for MEGA.

    Example:
        ```python
        async with MegaDriveClient() as client:
            await client.authenticate("user@example.com", "password")

            # List files
            await client.refresh_tree()
            print(client.format_tree())

            # Download a file
            await client.download_to_file("/docs/report.pdf", "report.pdf")
        ```

    Args:
        config: Client configuration. Uses defaults if not provided.
        transport: Optional httpx transport for testing (mock transport).
    """

    def __init__(
        self,
        config: MegaDriveConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or MegaDriveConfig()
        self._transport = transport

        self._http: AsyncHttpClient | None = None
        self._sessions: SessionManager | None = None
        self._dispatcher: CommandDispatcher | None = None
        self._auth_service: AuthService | None = None
        self._tree_service: TreeService | None = None
        self._file_service: FileService | None = None

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def __aenter__(self) -> Self:
        """Enter async context."""
        await self._ensure_initialized()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object
    ) -> None:
        """Exit async context."""
        await self.close()

    async def _ensure_initialized(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            self._http = AsyncHttpClient(self._config, transport=self._transport)
            await self._http.__aenter__()
            self._start_session()

            self._initialized = True
            logger.debug("Client initialized")

    def _start_session(self) -> None:
        # Sequence numbers and keys belong to one session; a new login starts fresh.
        self._sessions = SessionManager(self._config)
        self._dispatcher = CommandDispatcher(self._http, self._sessions, self._config)
        self._auth_service = AuthService(self._dispatcher, self._sessions)
        self._tree_service = TreeService(self._dispatcher, self._sessions, self._config)
        self._file_service = FileService(
            self._dispatcher,
            self._sessions,
            self._tree_service,
            TransferEngine(self._http),
            self._config,
        )

    async def close(self) -> None:
        """Close the client, zero key material and release resources."""
        async with self._init_lock:
            if self._sessions is not None:
                self._sessions.close()
                self._sessions = None

            if self._http:
                await self._http.__aexit__(None, None, None)
                self._http = None

            self._dispatcher = None
            self._auth_service = None
            self._tree_service = None
            self._file_service = None
            self._initialized = False
            logger.debug("Client closed")

    # Authentication

    async def authenticate(self, email: str, password: str) -> Session:
        """
        Log in to MEGA.

        Args:
            email: Account e-mail.
            password: Account password.

        Returns:
            The authenticated Session.

        Raises:
            BadSecretError: If the credentials are wrong.
            AuthenticationError: If authentication fails.
        """
        await self._ensure_initialized()
        if self._sessions.state is SessionState.CLOSED:
            self._start_session()
        return await self._auth_service.authenticate(email, password)

    async def logout(self) -> None:
        """Logout and clear session."""
        if self._auth_service:
            await self._auth_service.logout()

    @property
    def is_authenticated(self) -> bool:
        return self._auth_service is not None and self._auth_service.is_authenticated

    async def user_info(self) -> UserInfo:
        self._require_auth()
        return await self._auth_service.user_info()

    # Tree

    async def refresh_tree(self) -> ListingReport:
        """
        Fetch the whole node tree.

        Returns:
            Listing report with orphaned and undecryptable nodes.
        """
        self._require_auth()
        return await self._tree_service.refresh()

    async def get_node(self, path: str) -> Node | None:
        """
        Get a node by path.

        Args:
            path: File or folder path below the cloud drive root.

        Returns:
            Node or None if not found.
        """
        self._require_auth()
        return await self._tree_service.get_node_by_path(path)

    async def list_directory(self, path: str = "/") -> list[Node]:
        """
        List contents of a directory.

        Args:
            path: Directory path (e.g., "/Documents").

        Raises:
            UnknownNodeError: If the path doesn't exist or is a file.
        """
        self._require_auth()
        return await self._tree_service.list_directory(path)

    def format_tree(self, path: str = "/") -> str:
        """Format the loaded tree below path as text."""
        self._require_auth()
        tree = self._tree_service.tree
        return tree.format_tree(tree.find(path).node_id)

    async def create_folder(self, path: str, name: str) -> Node:
        self._require_auth()
        parent = await self._resolve(path)
        return await self._tree_service.create_folder(parent.node_id, name)

    async def move(self, path: str, destination: str) -> Node:
        """Move the node at path into the folder at destination."""
        self._require_auth()
        node = await self._resolve(path)
        target = await self._resolve(destination)
        return await self._tree_service.move_node(node.node_id, target.node_id)

    async def rename(self, path: str, name: str) -> Node:
        self._require_auth()
        node = await self._resolve(path)
        return await self._tree_service.rename_node(node.node_id, name)

    async def delete(self, path: str) -> None:
        self._require_auth()
        node = await self._resolve(path)
        await self._tree_service.delete_node(node.node_id)

    # Files

    async def download_file(
        self,
        path: str,
        *,
        resume_from: TransferState | None = None,
        cancel: asyncio.Event | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Download and decrypt a file as a stream.

        The content MAC is checked after the last chunk; consume the whole
        stream before trusting the data. A stream abandoned early should be
        closed with ``aclose()`` so its transfer slot is released.

        Example:
            ```python
            with open("local_file.pdf", "wb") as f:
                async for chunk in client.download_file("/docs/report.pdf"):
                    f.write(chunk)
            ```
        """
        self._require_auth()
        node = await self._resolve(path)
        stream = self._file_service.download(
            node.node_id, resume_from=resume_from, cancel=cancel, checkpoint=checkpoint
        )
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                yield chunk

    async def download_to_file(self, path: str, destination: Path | str) -> None:
        """
        Download a file and save to disk.

        Args:
            path: File path in the drive.
            destination: Local file path to save to.
        """
        self._require_auth()
        node = await self._resolve(path)
        await self._file_service.download_to_file(node.node_id, Path(destination))

    async def upload(
        self,
        path: str,
        name: str,
        source: bytes | AsyncIterable[bytes],
        size: int | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> Node:
        """
        Upload content as a new file in the folder at path.

        Args:
            path: Destination folder path.
            name: File name.
            source: Plaintext bytes or an async iterable of byte buffers.
            size: Content size; required when source is an iterable.
        """
        self._require_auth()
        if size is None:
            if not isinstance(source, (bytes, bytearray)):
                msg = "size is required for streamed uploads"
                raise ValueError(msg)
            size = len(source)
        parent = await self._resolve(path)
        return await self._file_service.upload(parent.node_id, name, source, size, cancel=cancel)

    async def upload_file(self, source: Path | str, path: str = "/") -> Node:
        """Upload a local file into the folder at path."""
        self._require_auth()
        parent = await self._resolve(path)
        return await self._file_service.upload_file(parent.node_id, Path(source))

    async def _resolve(self, path: str) -> Node:
        tree = await self._tree_service.ensure_loaded()
        return tree.find(path)

    def _require_auth(self) -> None:
        if not self.is_authenticated:
            msg = "Not authenticated. Call authenticate() first."
            raise NotAuthenticatedError(msg)
