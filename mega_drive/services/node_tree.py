"""
In-memory node tree.

Nodes live in an arena keyed by id; parent links are ids, never object
references. Records whose parent has not been seen yet wait in a pending
set, so a listing may deliver children before their parents. When a
listing is declared complete, whatever is still pending is reported as an
orphan instead of being dropped; an orphan still attaches if a later page
delivers its parent. A record that would hang a node below its own
descendant is refused and reported as a cycle.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

import structlog

from mega_drive.crypto.aes import decrypt_attributes, decrypt_key_blob
from mega_drive.crypto.encoding import b64url_decode
from mega_drive.crypto.rsa import rsa_decrypt
from mega_drive.exceptions import (
    CryptoError,
    CycleError,
    KeyUndecryptableError,
    NotAuthenticatedError,
    OrphanNodeError,
    UnknownNodeError,
)
from mega_drive.models.auth import Session
from mega_drive.models.crypto import AES_KEY_SIZE, FILE_KEY_SIZE
from mega_drive.models.drive import (
    ListingReport,
    Node,
    NodeAttributes,
    NodeKind,
    NodeRecord,
    attribute_key,
    parse_timestamp,
)

logger = structlog.get_logger(__name__)

UNDECRYPTABLE_NAME = "[undecryptable]"


def split_path(path: str) -> list[str]:
    return [p for p in path.strip("/").split("/") if p]


@dataclass
class StagedChange:
    """
    Snapshot taken before an optimistic local mutation.

    Attributes:
        node_id: Node the mutation targets.
        previous: Node values to restore on rollback.
        added: Ids introduced by the mutation, removed on rollback.
        undecryptable: Key errors of removed nodes, restored on rollback.
    """

    node_id: str
    previous: list[Node] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    undecryptable: dict[str, KeyUndecryptableError] = field(default_factory=dict)


class NodeTree:
    """
    Decrypted view of the remote filesystem.

    Node keys are unwrapped with the session master key, or with share
    keys from the listing (``ok`` entries, ``sk`` on share roots).
    """

    def __init__(self, session: Session) -> None:
        """
        Args:
            session: Authenticated session providing the master key and user handle.
        """
        self._session = session

        self._nodes: dict[str, Node] = {}
        self._children: dict[str, set[str]] = {}
        self._share_keys: dict[str, bytes] = {}
        self._pending: dict[str, NodeRecord] = {}
        self._waiting: dict[str, set[str]] = {}
        self._orphans: dict[str, NodeRecord] = {}
        self._undecryptable: dict[str, KeyUndecryptableError] = {}
        self._top_level: dict[NodeKind, str] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def root_id(self) -> str | None:
        return self._top_level.get(NodeKind.ROOT)

    @property
    def trash_id(self) -> str | None:
        return self._top_level.get(NodeKind.TRASH)

    @property
    def inbox_id(self) -> str | None:
        return self._top_level.get(NodeKind.INBOX)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def orphans(self) -> list[NodeRecord]:
        return list(self._orphans.values())

    def get(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            msg = "Unknown node"
            raise UnknownNodeError(msg, node_id=node_id) from None

    def nodes(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    # Ingestion

    def apply_listing(
        self,
        records: Iterable[NodeRecord],
        *,
        share_keys: dict[str, str] | None = None,
        complete: bool = True,
    ) -> ListingReport:
        """
        Ingest a full or incremental snapshot.

        Args:
            records: Node records in server order.
            share_keys: Wrapped share keys (``ok`` entries) by share handle.
            complete: Whether the listing is finished; pending records then become orphans.

        Returns:
            What was added, updated, left pending, orphaned or undecryptable.
        """
        records = list(records)
        report = ListingReport()

        for handle, wrapped in (share_keys or {}).items():
            self._register_share_key(handle, wrapped, inbound=False)
        for record in records:
            if record.share_key:
                self._register_share_key(
                    record.node_id, record.share_key, inbound=record.is_inbound_share
                )

        for record in records:
            self._ingest(record, report)

        if complete:
            for node_id, record in self._pending.items():
                orphan = OrphanNodeError(
                    "Parent never arrived during listing",
                    node_id=node_id,
                    parent_id=record.parent_id,
                )
                report.orphans.append(orphan)
                self._orphans[node_id] = record
                logger.warning("Orphan node", node_id=node_id, parent_id=record.parent_id)
            # Orphans stay in _waiting so a later page can still attach them.
            self._pending.clear()

        report.pending = len(self._pending)
        logger.debug(
            "Listing applied",
            added=len(report.added),
            updated=len(report.updated),
            pending=report.pending,
            orphans=len(report.orphans),
            cycles=len(report.cycles),
            undecryptable=len(report.undecryptable),
        )
        return report

    def add_records(self, records: Iterable[NodeRecord]) -> list[Node]:
        """Insert nodes the server just created; their parents must be known."""
        report = self.apply_listing(records, complete=True)
        if report.cycles:
            raise report.cycles[0]
        if report.orphans:
            raise report.orphans[0]
        return [self._nodes[node_id] for node_id in report.added + report.updated]

    def _ingest(self, record: NodeRecord, report: ListingReport) -> None:
        if not self._is_attachable(record):
            self._orphans.pop(record.node_id, None)
            self._pending[record.node_id] = record
            self._waiting.setdefault(record.parent_id, set()).add(record.node_id)
            return

        ready = [record]
        while ready:
            current = ready.pop()
            self._orphans.pop(current.node_id, None)
            self._pending.pop(current.node_id, None)
            if self._creates_cycle(current):
                cycle = CycleError(
                    "Record would move a node below itself",
                    node_id=current.node_id,
                    parent_id=current.parent_id,
                )
                report.cycles.append(cycle)
                logger.warning(
                    "Cyclic node record", node_id=current.node_id, parent_id=current.parent_id
                )
                continue
            if current.node_id in self._nodes:
                report.updated.append(current.node_id)
            else:
                report.added.append(current.node_id)
            self._put(self._decrypt(current, report))

            for child_id in sorted(self._waiting.pop(current.node_id, ())):
                child = self._pending.get(child_id) or self._orphans.get(child_id)
                if child is not None and child.parent_id == current.node_id:
                    ready.append(child)

    def _is_attachable(self, record: NodeRecord) -> bool:
        if record.kind.is_top_level or record.parent_id is None:
            return True
        if record.is_inbound_share and record.parent_id not in self._nodes:
            return True
        return record.parent_id in self._nodes

    def _creates_cycle(self, record: NodeRecord) -> bool:
        if record.node_id not in self._nodes or record.parent_id not in self._nodes:
            return False
        return self.is_ancestor(record.node_id, record.parent_id)

    def _decrypt(self, record: NodeRecord, report: ListingReport) -> Node:
        if record.kind.is_top_level:
            node = Node.top_level(record)
            self._top_level[record.kind] = record.node_id
            return node

        parent_id = record.parent_id if record.parent_id in self._nodes else None
        try:
            key = self._unwrap_node_key(record)
            raw_attributes = decrypt_attributes(
                b64url_decode(record.encrypted_attributes), attribute_key(key)
            )
        except (KeyUndecryptableError, CryptoError) as e:
            error = e
            if not isinstance(e, KeyUndecryptableError):
                msg = f"Node attributes do not decrypt: {e}"
                error = KeyUndecryptableError(msg, node_id=record.node_id)
            self._undecryptable[record.node_id] = error
            report.undecryptable.append(error)
            logger.warning("Undecryptable node", node_id=record.node_id)
            key = b""
            attributes = NodeAttributes(name=UNDECRYPTABLE_NAME)
        else:
            self._undecryptable.pop(record.node_id, None)
            attributes = NodeAttributes.from_record(raw_attributes, record.timestamp)

        return Node(
            node_id=record.node_id,
            parent_id=parent_id,
            kind=record.kind,
            attributes=attributes,
            key=key,
            size=record.size if record.kind == NodeKind.FILE else 0,
            content_handle=record.node_id if record.kind == NodeKind.FILE else None,
            owner=record.owner,
            created_at=parse_timestamp(record.timestamp),
        )

    def _unwrap_node_key(self, record: NodeRecord) -> bytes:
        expected = FILE_KEY_SIZE if record.kind == NodeKind.FILE else AES_KEY_SIZE
        user_handle = self._session.user_handle

        for holder, wrapped in record.key_entries.items():
            if holder == user_handle:
                wrapping_key = self._session.master_key
            elif holder in self._share_keys:
                wrapping_key = self._share_keys[holder]
            else:
                continue
            try:
                key = decrypt_key_blob(b64url_decode(wrapped), wrapping_key)
            except CryptoError:
                continue
            if len(key) == expected:
                return key

        msg = "No available key unwraps the node key"
        raise KeyUndecryptableError(msg, node_id=record.node_id)

    def _register_share_key(self, handle: str, wrapped: str, *, inbound: bool) -> None:
        try:
            raw = b64url_decode(wrapped)
            if inbound:
                key = rsa_decrypt(raw, self._session.private_key)[:AES_KEY_SIZE]
            else:
                key = decrypt_key_blob(raw, self._session.master_key)
        except (CryptoError, NotAuthenticatedError) as e:
            logger.warning("Share key not usable", share=handle, error_type=type(e).__name__)
            return
        if len(key) == AES_KEY_SIZE:
            self._share_keys[handle] = key

    # Queries

    def resolve_key(self, node_id: str) -> bytes:
        """
        Unwrapped key of a node.

        Raises:
            UnknownNodeError: If the node is not in the tree.
            KeyUndecryptableError: If the node key could not be unwrapped.
        """
        node = self.get(node_id)
        if node_id in self._undecryptable:
            raise self._undecryptable[node_id]
        if not node.key:
            msg = "Node has no key"
            raise KeyUndecryptableError(msg, node_id=node_id)
        return node.key

    def path_of(self, node_id: str) -> list[str]:
        """
        Node ids from the top-level ancestor down to node_id.

        Raises:
            UnknownNodeError: If the node or one of its ancestors is missing.
            CycleError: If parent links loop.
        """
        path = []
        seen: set[str] = set()
        current: str | None = node_id
        while current is not None:
            if current in seen:
                msg = "Parent links form a cycle"
                raise CycleError(msg, node_id=current)
            seen.add(current)
            path.append(current)
            current = self.get(current).parent_id
        path.reverse()
        return path

    def path_string(self, node_id: str) -> str:
        ids = self.path_of(node_id)
        return "/" + "/".join(self._nodes[i].name for i in ids[1:])

    def children_of(self, node_id: str) -> list[Node]:
        """Children sorted folders first, then by name."""
        self.get(node_id)
        children = [self._nodes[c] for c in self._children.get(node_id, ())]
        return sorted(children, key=lambda n: (n.is_file, n.name.lower()))

    def child_named(self, node_id: str, name: str) -> Node | None:
        for child in self.children_of(node_id):
            if child.name == name:
                return child
        return None

    def find(self, path: str, *, top_level: NodeKind = NodeKind.ROOT) -> Node:
        """
        Resolve a slash separated path below a top-level node.

        Raises:
            UnknownNodeError: If a component does not exist.
        """
        start = self._top_level.get(top_level)
        if start is None:
            msg = f"Tree has no {top_level.name.lower()} node"
            raise UnknownNodeError(msg)
        node = self._nodes[start]
        for part in split_path(path):
            child = self.child_named(node.node_id, part)
            if child is None:
                msg = f"Path not found: {path}"
                raise UnknownNodeError(msg, node_id=node.node_id)
            node = child
        return node

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        return ancestor_id in self.path_of(node_id)

    def format_tree(self, node_id: str | None = None, indent: int = 0) -> str:
        """
        Format a subtree as text.

        Args:
            node_id: Subtree root; defaults to the cloud drive root.
            indent: Current indentation level.
        """
        node = self.get(node_id or self.root_id or "")
        lines: list[str] = []
        self._format_lines(node, indent, lines, set())
        return "\n".join(lines)

    def _format_lines(self, node: Node, indent: int, lines: list[str], seen: set[str]) -> None:
        if node.node_id in seen:
            return
        seen.add(node.node_id)
        prefix = "  " * indent
        icon = "[F]" if node.is_file else "[D]"
        size_str = f" ({_format_size(node.size)})" if node.is_file else ""
        lines.append(f"{prefix}{icon} {node.name}{size_str}")
        for child in self.children_of(node.node_id):
            self._format_lines(child, indent + 1, lines, seen)

    # Optimistic mutations

    def stage_move(self, node_id: str, new_parent_id: str) -> StagedChange:
        """
        Move a node locally.

        Raises:
            UnknownNodeError: If either node is missing.
            CycleError: If new_parent_id is the node itself or one of its descendants.
        """
        node = self.get(node_id)
        parent = self.get(new_parent_id)
        if not parent.is_folder:
            msg = "Target is not a folder"
            raise UnknownNodeError(msg, node_id=new_parent_id)
        if self.is_ancestor(node_id, new_parent_id):
            msg = "Cannot move a node below itself"
            raise CycleError(msg, node_id=node_id, parent_id=new_parent_id)
        self._put(node.moved_to(new_parent_id))
        return StagedChange(node_id=node_id, previous=[node])

    def stage_rename(self, node_id: str, name: str) -> StagedChange:
        node = self.get(node_id)
        self._put(node.with_attributes(node.attributes.renamed(name)))
        return StagedChange(node_id=node_id, previous=[node])

    def stage_delete(self, node_id: str) -> StagedChange:
        """Remove a node and its subtree locally."""
        self.get(node_id)
        removed: dict[str, Node] = {}
        stack = [node_id]
        while stack:
            current = stack.pop()
            if current in removed:
                continue
            removed[current] = self._nodes[current]
            stack.extend(self._children.get(current, ()))
        change = StagedChange(node_id=node_id, previous=list(removed.values()))
        for current in removed:
            error = self._remove(current)
            if error is not None:
                change.undecryptable[current] = error
        return change

    def rollback(self, change: StagedChange) -> None:
        for node_id in change.added:
            if node_id in self._nodes:
                self._remove(node_id)
        for node in change.previous:
            self._put(node)
        self._undecryptable.update(change.undecryptable)
        logger.debug("Local change rolled back", node_id=change.node_id)

    def _put(self, node: Node) -> None:
        old = self._nodes.get(node.node_id)
        if old is not None and old.parent_id is not None:
            self._children.get(old.parent_id, set()).discard(node.node_id)
        self._nodes[node.node_id] = node
        if node.parent_id is not None:
            self._children.setdefault(node.parent_id, set()).add(node.node_id)

    def _remove(self, node_id: str) -> KeyUndecryptableError | None:
        node = self._nodes.pop(node_id)
        if node.parent_id is not None:
            self._children.get(node.parent_id, set()).discard(node_id)
        return self._undecryptable.pop(node_id, None)


def _format_size(size_bytes: int) -> str:
    """Format byte size in human-readable form."""
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
