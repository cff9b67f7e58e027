"""
Drive-related domain models.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from mega_drive.crypto.encoding import b64url_decode
from mega_drive.exceptions import (
    CycleError,
    KeyFormatError,
    KeyUndecryptableError,
    OrphanNodeError,
)
from mega_drive.models.crypto import CounterState, FileKey, MacState

_FINGERPRINT_CRC_SIZE = 16


class NodeKind(IntEnum):
    """Type of remote node, as carried in the ``t`` field."""

    FILE = 0
    FOLDER = 1
    ROOT = 2
    INBOX = 3
    TRASH = 4

    @property
    def is_top_level(self) -> bool:
        """Root, inbox and trash have no parent."""
        return self in (NodeKind.ROOT, NodeKind.INBOX, NodeKind.TRASH)

    @property
    def is_container(self) -> bool:
        return self is not NodeKind.FILE


_TOP_LEVEL_NAMES = {
    NodeKind.ROOT: "Cloud Drive",
    NodeKind.INBOX: "Inbox",
    NodeKind.TRASH: "Rubbish Bin",
}


@dataclass(frozen=True, kw_only=True)
class NodeRecord:
    """
    A node as listed by the server, before any decryption.

    Attributes:
        node_id: Node handle (``h``).
        parent_id: Parent handle (``p``), None for top-level nodes.
        kind: Node type.
        owner: Owning user handle (``u``).
        encrypted_attributes: Base64 attribute blob (``a``).
        key_field: Key entries ``id:key/id:key`` (``k``).
        size: File size in bytes (``s``).
        timestamp: Server creation time (``ts``).
        share_user: Sharing user for inbound share roots (``su``).
        share_key: Share key on share roots (``sk``).
    """

    node_id: str
    parent_id: str | None
    kind: NodeKind
    owner: str = ""
    encrypted_attributes: str = ""
    key_field: str = ""
    size: int = 0
    timestamp: int | None = None
    share_user: str | None = None
    share_key: str | None = None

    @property
    def key_entries(self) -> dict[str, str]:
        """Map of key holder handle to base64 wrapped key."""
        entries = {}
        for part in self.key_field.split("/"):
            holder, sep, wrapped = part.partition(":")
            if sep and wrapped:
                entries[holder] = wrapped
        return entries

    @property
    def is_inbound_share(self) -> bool:
        return self.share_user is not None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "NodeRecord":
        parent = data.get("p") or None
        return cls(
            node_id=data["h"],
            parent_id=parent,
            kind=NodeKind(data["t"]),
            owner=data.get("u", ""),
            encrypted_attributes=data.get("a", ""),
            key_field=data.get("k", ""),
            size=data.get("s", 0),
            timestamp=data.get("ts"),
            share_user=data.get("su"),
            share_key=data.get("sk"),
        )


@dataclass(frozen=True, kw_only=True)
class NodeAttributes:
    """
    Decrypted node attributes.

    Attributes:
        name: Node name (``n``).
        modified_at: Modification time from the ``c`` fingerprint, or the server timestamp.
        extra: Every other field, preserved verbatim for re-encryption.
    """

    name: str
    modified_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any], timestamp: int | None = None) -> "NodeAttributes":
        extra = {k: v for k, v in record.items() if k != "n"}
        modified_at = _fingerprint_mtime(record.get("c"))
        if modified_at is None and timestamp is not None:
            modified_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        return cls(name=str(record.get("n", "")), modified_at=modified_at, extra=extra)

    def to_record(self) -> dict[str, Any]:
        return {"n": self.name, **self.extra}

    def renamed(self, name: str) -> "NodeAttributes":
        return NodeAttributes(name=name, modified_at=self.modified_at, extra=dict(self.extra))


def _fingerprint_mtime(fingerprint: Any) -> datetime | None:
    if not isinstance(fingerprint, str):
        return None
    try:
        raw = b64url_decode(fingerprint)
    except KeyFormatError:
        return None
    if len(raw) <= _FINGERPRINT_CRC_SIZE:
        return None
    length = raw[_FINGERPRINT_CRC_SIZE]
    data = raw[_FINGERPRINT_CRC_SIZE + 1 : _FINGERPRINT_CRC_SIZE + 1 + length]
    if length == 0 or len(data) != length:
        return None
    try:
        return datetime.fromtimestamp(int.from_bytes(data, "little"), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


@dataclass(frozen=True, kw_only=True)
class Node:
    """
    A decrypted node in the tree.

    Attributes:
        node_id: Node handle.
        parent_id: Parent handle, None for top-level nodes and inbound share roots.
        kind: Node type.
        attributes: Decrypted attributes (placeholder names for top-level nodes).
        key: Unwrapped node key: 32 bytes for files, 16 for folders, empty for top-level nodes.
        size: File size in bytes.
        content_handle: Locator passed to the download command (files only).
        owner: Owning user handle.
        created_at: Server creation time.
    """

    node_id: str
    parent_id: str | None
    kind: NodeKind
    attributes: NodeAttributes
    key: bytes = field(default=b"", repr=False)
    size: int = 0
    content_handle: str | None = None
    owner: str = ""
    created_at: datetime | None = None

    @property
    def name(self) -> str:
        return self.attributes.name

    @property
    def is_file(self) -> bool:
        return self.kind == NodeKind.FILE

    @property
    def is_folder(self) -> bool:
        return self.kind.is_container

    @property
    def aes_key(self) -> bytes:
        """16-byte key the attributes are encrypted with."""
        return attribute_key(self.key)

    def moved_to(self, parent_id: str | None) -> "Node":
        return replace(self, parent_id=parent_id)

    def with_attributes(self, attributes: NodeAttributes) -> "Node":
        return replace(self, attributes=attributes)

    @classmethod
    def top_level(cls, record: NodeRecord) -> "Node":
        return cls(
            node_id=record.node_id,
            parent_id=None,
            kind=record.kind,
            attributes=NodeAttributes(name=_TOP_LEVEL_NAMES.get(record.kind, record.node_id)),
            owner=record.owner,
            created_at=parse_timestamp(record.timestamp),
        )


def parse_timestamp(ts: int | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def attribute_key(node_key: bytes) -> bytes:
    """
    AES key of a node.

    File keys fold their 32 bytes into 16; folder keys are used as is.
    """
    if len(node_key) == 32:
        return bytes(a ^ b for a, b in zip(node_key[:16], node_key[16:], strict=True))
    return node_key


@dataclass(frozen=True, slots=True)
class TransferChunk:
    """
    One segment of the chunk schedule.

    Plaintext and ciphertext ranges coincide (CTR mode), so a single
    range describes both.

    Attributes:
        index: Position in the schedule.
        offset: First byte of the chunk in the file.
        size: Chunk length in bytes.
        counter: Keystream state at the first byte of the chunk.
    """

    index: int
    offset: int
    size: int
    counter: CounterState

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def byte_range(self) -> tuple[int, int]:
        """Inclusive (start, end) range."""
        return self.offset, self.end - 1


@dataclass
class ListingReport:
    """
    Outcome of applying a listing to the tree.

    Orphans, refused cyclic records and undecryptable keys are partial
    results, not hard failures: listings may be paginated or include nodes
    shared by other users.
    """

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    pending: int = 0
    orphans: list[OrphanNodeError] = field(default_factory=list)
    cycles: list[CycleError] = field(default_factory=list)
    undecryptable: list[KeyUndecryptableError] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return (
            not self.orphans
            and not self.cycles
            and not self.undecryptable
            and self.pending == 0
        )


@dataclass(frozen=True, slots=True)
class TransferState:
    """
    Checkpoint of a transfer after a whole number of chunks.

    Enough to resume: the next chunk index, the keystream position and
    the MAC accumulated so far.

    Attributes:
        chunk_index: Index of the next chunk to process.
        counter: Keystream state at the first byte of that chunk.
        mac: MAC accumulator over all processed chunks.
    """

    chunk_index: int
    counter: CounterState
    mac: MacState

    @property
    def offset(self) -> int:
        return self.counter.offset


@dataclass(frozen=True, kw_only=True)
class UploadResult:
    """
    Outcome of an upload.

    Attributes:
        completion_handle: Token returned by the storage server, passed to node creation.
        file_key: Key of the new file, meta-MAC included.
        size: Bytes uploaded.
    """

    completion_handle: str
    file_key: FileKey = field(repr=False)
    size: int
