"""
File transfer service for MEGA drive.

Resolves nodes to file keys and storage locators, then streams content
through the transfer engine.
"""

import asyncio
import secrets
from collections.abc import AsyncGenerator, AsyncIterable
from contextlib import aclosing
from pathlib import Path

import structlog

from mega_drive.api import commands
from mega_drive.api.dispatcher import CommandDispatcher
from mega_drive.config import MegaDriveConfig
from mega_drive.crypto.aes import encrypt_attributes, encrypt_key_blob
from mega_drive.crypto.encoding import b64url_encode
from mega_drive.exceptions import DispatchError, UnknownNodeError
from mega_drive.models.commands import CreatedNodes, DownloadLocator, UploadLocator
from mega_drive.models.crypto import AES_KEY_SIZE, NONCE_SIZE, FileKey
from mega_drive.models.drive import Node, NodeAttributes, NodeKind, TransferState
from mega_drive.services.session_manager import SessionManager
from mega_drive.services.transfer_engine import Checkpoint, TransferEngine
from mega_drive.services.tree_service import TreeService

logger = structlog.get_logger(__name__)

_READ_BLOCK_SIZE = 1024 * 1024


class FileService:
    """
    Service for downloading and uploading files.

    At most ``max_concurrent_transfers`` transfers run at once; chunks of
    a single file are always processed in order.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        session_manager: SessionManager,
        tree_service: TreeService,
        engine: TransferEngine,
        config: MegaDriveConfig | None = None,
    ) -> None:
        """
        Args:
            dispatcher: Command dispatcher of the session.
            session_manager: Provider of the master key for new nodes.
            tree_service: Tree service for node and key resolution.
            engine: Chunked transfer engine.
            config: Client configuration.
        """
        self._dispatcher = dispatcher
        self._sessions = session_manager
        self._tree_service = tree_service
        self._engine = engine
        self._config = config or MegaDriveConfig()
        self._slots = asyncio.Semaphore(self._config.max_concurrent_transfers)

    async def get_download_locator(self, node_id: str) -> DownloadLocator:
        result = await self._dispatcher.execute(
            commands.download_url(node_id, ssl=self._config.use_https_transfers)
        )
        if not isinstance(result, DownloadLocator):
            msg = "Unexpected download locator result"
            raise DispatchError(msg, node_id=node_id)
        return result

    async def download(
        self,
        node_id: str,
        *,
        resume_from: TransferState | None = None,
        cancel: asyncio.Event | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> AsyncGenerator[bytes, None]:
        """
        Download and decrypt a file as a stream.

        The stream holds one transfer slot until it is exhausted or closed;
        a caller that stops early must call ``aclose()`` on it (or wrap it
        in ``contextlib.aclosing``) to hand the slot back at once.

        Args:
            node_id: File node id.
            resume_from: Checkpoint of an interrupted download.
            cancel: Event checked at every chunk boundary.
            checkpoint: Called with the transfer state after every chunk.

        Yields:
            Decrypted file content in chunks.

        Raises:
            UnknownNodeError: If the node doesn't exist or is not a file.
            KeyUndecryptableError: If the file key is not available.
            IntegrityFailureError: If the content MAC does not verify.
        """
        tree = await self._tree_service.ensure_loaded()
        node = tree.get(node_id)
        if not node.is_file:
            msg = "Node is not a file"
            raise UnknownNodeError(msg, node_id=node_id)
        file_key = FileKey.unpack(tree.resolve_key(node_id))

        async with self._slots:
            locator = await self.get_download_locator(node_id)
            logger.debug("Downloading file", node_id=node_id, size=locator.size)
            async for chunk in self._engine.download(
                locator.url,
                locator.size,
                file_key,
                node_id=node_id,
                resume_from=resume_from,
                cancel=cancel,
                checkpoint=checkpoint,
            ):
                yield chunk

    async def download_file(self, path: str) -> AsyncGenerator[bytes, None]:
        """Download a file by its path below the cloud drive root."""
        tree = await self._tree_service.ensure_loaded()
        node = tree.find(path)
        async for chunk in self.download(node.node_id):
            yield chunk

    async def download_to_file(self, node_id: str, destination: Path) -> None:
        """
        Download a file and save to disk.

        Content is written to a ``.part`` file next to destination and only
        renamed once the MAC verified; on any failure the partial file is
        removed and destination is left untouched.

        Args:
            node_id: File node id.
            destination: Local file path to save to.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        try:
            async with aclosing(self.download(node_id)) as chunks:
                with partial.open("wb") as f:
                    async for chunk in chunks:
                        f.write(chunk)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(destination)

        logger.info("File saved", node_id=node_id, destination=str(destination))

    async def upload(
        self,
        parent_id: str,
        name: str,
        source: bytes | AsyncIterable[bytes],
        size: int,
        *,
        cancel: asyncio.Event | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> Node:
        """
        Encrypt and upload content as a new file node.

        Args:
            parent_id: Folder to create the file in.
            name: File name.
            source: Plaintext bytes or an async iterable of byte buffers.
            size: Exact size of source in bytes.
            cancel: Event checked at every chunk boundary.
            checkpoint: Called with the transfer state after every chunk.

        Returns:
            The created file node.

        Raises:
            UnknownNodeError: If the parent doesn't exist or is a file.
            UploadError: If the storage server rejects the content.
        """
        if not name or "/" in name:
            msg = f"Invalid file name: {name!r}"
            raise ValueError(msg)

        tree = await self._tree_service.ensure_loaded()
        if tree.get(parent_id).is_file:
            msg = "Parent is not a folder"
            raise UnknownNodeError(msg, node_id=parent_id)

        file_key = FileKey(
            aes_key=secrets.token_bytes(AES_KEY_SIZE),
            nonce=secrets.token_bytes(NONCE_SIZE),
        )

        async with self._slots:
            locator = await self._dispatcher.execute(
                commands.upload_url(size, ssl=self._config.use_https_transfers)
            )
            if not isinstance(locator, UploadLocator):
                msg = "Unexpected upload locator result"
                raise DispatchError(msg)
            logger.debug("Uploading file", parent_id=parent_id, size=size)
            uploaded = await self._engine.upload(
                locator.url, source, size, file_key, cancel=cancel, checkpoint=checkpoint
            )

        attributes = NodeAttributes(name=name)
        command = commands.create_nodes(
            parent_id,
            completion_handle=uploaded.completion_handle,
            kind=NodeKind.FILE,
            encrypted_attributes=b64url_encode(
                encrypt_attributes(attributes.to_record(), uploaded.file_key.aes_key)
            ),
            wrapped_key=b64url_encode(
                encrypt_key_blob(uploaded.file_key.pack(), self._sessions.master_key())
            ),
        )
        result = await self._dispatcher.execute(command, idempotent=False)
        if not isinstance(result, CreatedNodes) or not result.records:
            msg = "Unexpected node creation result"
            raise DispatchError(msg, opcode=command.opcode.value)

        node = self._tree_service.tree.add_records(result.records)[0]
        logger.info("File uploaded", node_id=node.node_id, parent_id=parent_id, size=size)
        return node

    async def upload_file(self, parent_id: str, source: Path, name: str | None = None) -> Node:
        """Upload a local file into parent_id, named after it unless name is given."""
        size = source.stat().st_size
        return await self.upload(parent_id, name or source.name, _read_file(source), size)


async def _read_file(path: Path) -> AsyncGenerator[bytes, None]:
    with path.open("rb") as f:
        while block := f.read(_READ_BLOCK_SIZE):
            yield block
