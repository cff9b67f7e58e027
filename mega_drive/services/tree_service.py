"""
Tree service for MEGA drive.

Loads the node tree with the list command and applies mutations in two
phases: the local tree changes first, the command is dispatched, and the
local change is rolled back if the server refuses it.
"""

import asyncio
import secrets

import structlog

from mega_drive.api import commands
from mega_drive.api.dispatcher import CommandDispatcher
from mega_drive.config import MegaDriveConfig
from mega_drive.crypto.aes import encrypt_attributes, encrypt_key_blob
from mega_drive.crypto.encoding import b64url_encode
from mega_drive.exceptions import (
    CommandError,
    DispatchError,
    MegaDriveError,
    TransportError,
    UnknownNodeError,
)
from mega_drive.models.commands import CreatedNodes, TreeListing
from mega_drive.models.crypto import AES_KEY_SIZE
from mega_drive.models.drive import ListingReport, Node, NodeAttributes, NodeKind
from mega_drive.services.node_tree import NodeTree
from mega_drive.services.session_manager import SessionManager

logger = structlog.get_logger(__name__)

# Placeholder completion handle for nodes without uploaded content.
FOLDER_COMPLETION_HANDLE = "xxxxxxxx"


class TreeService:
    """
    Service for listing and mutating the drive tree.

    Mutations are serialized so that rollbacks never interleave.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        session_manager: SessionManager,
        config: MegaDriveConfig | None = None,
    ) -> None:
        """
        Args:
            dispatcher: Command dispatcher of the session.
            session_manager: Provider of the session keys.
            config: Client configuration.
        """
        self._dispatcher = dispatcher
        self._sessions = session_manager
        self._config = config or MegaDriveConfig()

        self._tree: NodeTree | None = None
        self._mutation_lock = asyncio.Lock()

    @property
    def tree(self) -> NodeTree:
        if self._tree is None:
            msg = "Tree not loaded. Call refresh() first."
            raise RuntimeError(msg)
        return self._tree

    @property
    def is_loaded(self) -> bool:
        return self._tree is not None

    async def refresh(self) -> ListingReport:
        """
        Fetch the full listing and rebuild the tree.

        Returns:
            Listing report; orphans and undecryptable nodes are partial results.
        """
        listing = await self._dispatcher.execute(commands.list_tree())
        if not isinstance(listing, TreeListing):
            msg = "Unexpected listing result"
            raise DispatchError(msg)

        tree = NodeTree(self._sessions.session)
        report = tree.apply_listing(listing.records, share_keys=listing.share_keys, complete=True)
        self._tree = tree
        logger.info(
            "Tree loaded",
            nodes=len(tree),
            orphans=len(report.orphans),
            undecryptable=len(report.undecryptable),
        )
        return report

    async def ensure_loaded(self) -> NodeTree:
        if self._tree is None:
            await self.refresh()
        return self.tree

    async def get_node_by_path(self, path: str) -> Node | None:
        """
        Get a node by path below the cloud drive root.

        Returns:
            The node or None if not found.
        """
        tree = await self.ensure_loaded()
        try:
            return tree.find(path)
        except UnknownNodeError:
            return None

    async def list_directory(self, path: str = "/") -> list[Node]:
        """
        List contents of a folder.

        Raises:
            UnknownNodeError: If the path doesn't exist or is a file.
        """
        tree = await self.ensure_loaded()
        node = tree.find(path)
        if node.is_file:
            msg = f"Not a folder: {path}"
            raise UnknownNodeError(msg, node_id=node.node_id)
        return tree.children_of(node.node_id)

    async def move_node(self, node_id: str, new_parent_id: str) -> Node:
        """
        Move a node under another folder.

        Raises:
            CycleError: If the target is the node itself or one of its descendants.
            CommandError: If the server refuses the move (local state restored).
        """
        async with self._mutation_lock:
            tree = await self.ensure_loaded()
            staged = tree.stage_move(node_id, new_parent_id)
            try:
                await self._dispatcher.execute(commands.move(node_id, new_parent_id))
            except MegaDriveError:
                tree.rollback(staged)
                raise
            logger.info("Node moved", node_id=node_id, parent_id=new_parent_id)
            return tree.get(node_id)

    async def rename_node(self, node_id: str, name: str) -> Node:
        """
        Rename a node, re-encrypting its attributes with every other field kept.

        Raises:
            KeyUndecryptableError: If the node key is not available.
            CommandError: If the server refuses the change (local state restored).
        """
        if not name or "/" in name:
            msg = f"Invalid node name: {name!r}"
            raise ValueError(msg)

        async with self._mutation_lock:
            tree = await self.ensure_loaded()
            key = tree.resolve_key(node_id)
            staged = tree.stage_rename(node_id, name)
            node = tree.get(node_id)
            command = commands.set_attributes(
                node_id,
                b64url_encode(encrypt_attributes(node.attributes.to_record(), node.aes_key)),
                b64url_encode(encrypt_key_blob(key, self._sessions.master_key())),
            )
            try:
                await self._dispatcher.execute(command)
            except MegaDriveError:
                tree.rollback(staged)
                raise
            logger.info("Node renamed", node_id=node_id)
            return node

    async def delete_node(self, node_id: str) -> None:
        """
        Delete a node and its subtree.

        Not idempotent: a failed delete is surfaced, never resent.

        Raises:
            CommandError: If the server refuses the delete (local state restored).
        """
        async with self._mutation_lock:
            tree = await self.ensure_loaded()
            staged = tree.stage_delete(node_id)
            try:
                await self._dispatcher.execute(commands.delete(node_id), idempotent=False)
            except MegaDriveError:
                tree.rollback(staged)
                raise
            logger.info("Node deleted", node_id=node_id, removed=len(staged.previous))

    async def create_folder(self, parent_id: str, name: str) -> Node:
        """
        Create a folder.

        Node creation is not idempotent. When an attempt ends in a transient
        error or a transport failure, the listing is refreshed to find out
        whether the folder exists (same parent, same fresh key) before the
        command is sent again.

        Raises:
            UnknownNodeError: If the parent does not exist or is a file.
            CommandError: If the server refuses the creation.
        """
        if not name or "/" in name:
            msg = f"Invalid folder name: {name!r}"
            raise ValueError(msg)

        async with self._mutation_lock:
            tree = await self.ensure_loaded()
            parent = tree.get(parent_id)
            if parent.is_file:
                msg = "Parent is not a folder"
                raise UnknownNodeError(msg, node_id=parent_id)

            folder_key = secrets.token_bytes(AES_KEY_SIZE)
            attributes = NodeAttributes(name=name)
            command = commands.create_nodes(
                parent_id,
                completion_handle=FOLDER_COMPLETION_HANDLE,
                kind=NodeKind.FOLDER,
                encrypted_attributes=b64url_encode(
                    encrypt_attributes(attributes.to_record(), folder_key)
                ),
                wrapped_key=b64url_encode(encrypt_key_blob(folder_key, self._sessions.master_key())),
            )

            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await self._dispatcher.execute(command, idempotent=False)
                except (CommandError, TransportError) as e:
                    retryable = not isinstance(e, CommandError) or e.is_transient
                    if not retryable or attempt > self._config.max_retries:
                        raise
                    logger.warning("Folder creation unconfirmed", attempt=attempt, error=str(e))
                    existing = await self._confirm_created(parent_id, folder_key)
                    if existing is not None:
                        return existing
                    await asyncio.sleep(self._config.backoff_delay(attempt))
                    continue
                break

            if not isinstance(result, CreatedNodes) or not result.records:
                msg = "Unexpected node creation result"
                raise DispatchError(msg, opcode=command.opcode.value)
            created = self.tree.add_records(result.records)
            logger.info("Folder created", node_id=created[0].node_id, parent_id=parent_id)
            return created[0]

    async def _confirm_created(self, parent_id: str, folder_key: bytes) -> Node | None:
        await self.refresh()
        for child in self.tree.children_of(parent_id):
            if child.is_folder and child.key == folder_key:
                logger.info("Folder creation confirmed by listing", node_id=child.node_id)
                return child
        return None
