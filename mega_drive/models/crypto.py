"""
Cryptographic domain models.

Streaming state (counter position, MAC accumulator) is modelled as immutable
values: every primitive returns the next state and the caller re-passes it.
"""

from dataclasses import dataclass, field

from mega_drive.exceptions import KeyFormatError

AES_KEY_SIZE = 16
AES_BLOCK_SIZE = 16
NONCE_SIZE = 8
META_MAC_SIZE = 8
FILE_KEY_SIZE = 32


@dataclass(frozen=True, kw_only=True)
class FileKey:
    """
    Key material of a file node.

    Attributes:
        aes_key: 16-byte AES key for content and attributes.
        nonce: 8-byte CTR nonce (also the chunk MAC IV half).
        meta_mac: 8-byte condensed MAC of the content, or None before upload completes.
    """

    aes_key: bytes = field(repr=False)
    nonce: bytes
    meta_mac: bytes | None = None

    def __post_init__(self) -> None:
        if len(self.aes_key) != AES_KEY_SIZE:
            msg = f"File AES key must be {AES_KEY_SIZE} bytes, got {len(self.aes_key)}"
            raise KeyFormatError(msg)
        if len(self.nonce) != NONCE_SIZE:
            msg = f"File nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}"
            raise KeyFormatError(msg)
        if self.meta_mac is not None and len(self.meta_mac) != META_MAC_SIZE:
            msg = f"Meta-MAC must be {META_MAC_SIZE} bytes, got {len(self.meta_mac)}"
            raise KeyFormatError(msg)

    @classmethod
    def unpack(cls, node_key: bytes) -> "FileKey":
        """
        Split a 32-byte file node key into its parts.

        The first half is the AES key XOR-ed with (nonce || meta_mac).
        """
        if len(node_key) != FILE_KEY_SIZE:
            msg = f"File node key must be {FILE_KEY_SIZE} bytes, got {len(node_key)}"
            raise KeyFormatError(msg)
        tail = node_key[16:]
        return cls(
            aes_key=_xor(node_key[:16], tail),
            nonce=tail[:8],
            meta_mac=tail[8:],
        )

    def pack(self) -> bytes:
        """Build the 32-byte node key. Requires the meta-MAC."""
        if self.meta_mac is None:
            msg = "Cannot pack a file key without its meta-MAC"
            raise KeyFormatError(msg)
        tail = self.nonce + self.meta_mac
        return _xor(self.aes_key, tail) + tail

    def with_meta_mac(self, meta_mac: bytes) -> "FileKey":
        return FileKey(aes_key=self.aes_key, nonce=self.nonce, meta_mac=meta_mac)


@dataclass(frozen=True, slots=True)
class CounterState:
    """
    Position of the CTR keystream.

    Attributes:
        nonce: 8-byte nonce forming the upper half of the counter block.
        offset: Byte offset into the stream; may be mid-block.
    """

    nonce: bytes
    offset: int = 0

    @property
    def block_index(self) -> int:
        return self.offset // AES_BLOCK_SIZE

    @property
    def block_offset(self) -> int:
        return self.offset % AES_BLOCK_SIZE

    def counter_block(self) -> bytes:
        return self.nonce + self.block_index.to_bytes(8, "big")

    def advance(self, length: int) -> "CounterState":
        return CounterState(self.nonce, self.offset + length)


@dataclass(frozen=True, slots=True)
class MacState:
    """
    Running accumulator of the two-level file MAC.

    Attributes:
        value: CBC-MAC over the chunk MACs seen so far (zero block initially).
        chunks: Number of chunk MACs folded in.
    """

    value: bytes = bytes(AES_BLOCK_SIZE)
    chunks: int = 0


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right, strict=True))
