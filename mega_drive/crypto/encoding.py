"""
Encoding helpers for the MEGA wire format.

MEGA transports binary values as unpadded URL-safe base64 and often reasons
about keys as arrays of big-endian 32-bit words.
"""

import base64
import struct

from mega_drive.exceptions import KeyFormatError


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """
    Decode unpadded URL-safe base64.

    Raises:
        KeyFormatError: If the input is not valid base64.
    """
    cleaned = data.replace(",", "").strip()
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (ValueError, TypeError) as e:
        msg = f"Invalid base64 value: {e}"
        raise KeyFormatError(msg) from e


def pad_to_block(data: bytes, block_size: int = 16) -> bytes:
    """Zero-pad data to a multiple of block_size."""
    remainder = len(data) % block_size
    if remainder == 0:
        return data
    return data + b"\x00" * (block_size - remainder)


def to_words(data: bytes) -> tuple[int, ...]:
    """Split bytes (zero-padded to 4) into big-endian 32-bit words."""
    padded = pad_to_block(data, 4)
    return struct.unpack(f">{len(padded) // 4}I", padded)


def from_words(words: tuple[int, ...] | list[int]) -> bytes:
    return struct.pack(f">{len(words)}I", *words)


def xor_bytes(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right, strict=True))


def read_mpi(data: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Read an OpenPGP-style MPI: 2-byte bit count followed by the big-endian value.

    Returns:
        Tuple of (value, offset after the MPI).

    Raises:
        KeyFormatError: If the buffer ends before the MPI does.
    """
    if len(data) < offset + 2:
        msg = "MPI header truncated"
        raise KeyFormatError(msg)
    bit_count = int.from_bytes(data[offset : offset + 2], "big")
    byte_count = (bit_count + 7) // 8
    end = offset + 2 + byte_count
    if len(data) < end:
        msg = f"MPI data incomplete: need {byte_count}, have {len(data) - offset - 2}"
        raise KeyFormatError(msg)
    return int.from_bytes(data[offset + 2 : end], "big"), end


def write_mpi(value: int) -> bytes:
    bit_count = value.bit_length()
    return bit_count.to_bytes(2, "big") + value.to_bytes((bit_count + 7) // 8, "big")
