"""
Command and command-result models.

Every opcode decodes into exactly one result type, so callers never see the
raw JSON the server sent.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from mega_drive.models.auth import LoginChallenge, PreloginInfo, UserInfo
from mega_drive.models.drive import NodeRecord


class Opcode(StrEnum):
    """Command API opcodes (the ``a`` field)."""

    PRELOGIN = "us0"
    LOGIN = "us"
    USER_INFO = "ug"
    LOGOUT = "sml"
    LIST_TREE = "f"
    DOWNLOAD_URL = "g"
    UPLOAD_URL = "u"
    CREATE_NODES = "p"
    MOVE = "m"
    SET_ATTRIBUTES = "a"
    DELETE = "d"

    @property
    def is_naturally_idempotent(self) -> bool:
        """Whether repeating the command leaves server state unchanged."""
        return self not in (Opcode.CREATE_NODES, Opcode.DELETE, Opcode.UPLOAD_URL)


@dataclass(frozen=True, kw_only=True)
class Command:
    """
    An outbound command.

    Attributes:
        opcode: Command opcode.
        args: Argument payload, merged next to ``a`` on the wire.
        idempotent: Whether the dispatcher may retry it under a new sequence number.
    """

    opcode: Opcode
    args: dict[str, Any] = field(default_factory=dict)
    idempotent: bool = True

    def to_wire(self) -> dict[str, Any]:
        return {"a": self.opcode.value, **self.args}


@dataclass(frozen=True, slots=True)
class Ack:
    """Plain acknowledgement (``m``, ``a``, ``d``, ``sml``)."""

    value: int | str = 0


@dataclass(frozen=True, kw_only=True)
class TreeListing:
    """
    Result of ``f``.

    Attributes:
        records: Node records in server order.
        share_keys: Outgoing share keys (``ok``), share handle to wrapped key.
    """

    records: list[NodeRecord]
    share_keys: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True, kw_only=True)
class DownloadLocator:
    """
    Result of ``g``.

    Attributes:
        url: Storage URL of the encrypted content.
        size: Content size in bytes.
        encrypted_attributes: Attribute blob of the node.
    """

    url: str
    size: int
    encrypted_attributes: str = ""


@dataclass(frozen=True, kw_only=True)
class UploadLocator:
    """Result of ``u``: the storage URL chunks are posted to."""

    url: str


@dataclass(frozen=True, kw_only=True)
class CreatedNodes:
    """Result of ``p``: the nodes as stored by the server."""

    records: list[NodeRecord]


CommandResult = (
    PreloginInfo
    | LoginChallenge
    | UserInfo
    | TreeListing
    | DownloadLocator
    | UploadLocator
    | CreatedNodes
    | Ack
)
