"""
Proof-of-work stamps for the ``X-Hashcash`` challenge.

The API may answer a batch with HTTP 402 and a challenge header
``1:<easiness>:<timestamp>:<token>``; the batch is then resent with
``X-Hashcash: 1:<token>:<stamp>``.
"""

import hashlib

from mega_drive.crypto.encoding import b64url_decode, b64url_encode
from mega_drive.exceptions import TransportError

_TOKEN_REPEATS = 262144
_TOKEN_SIZE = 48


def parse_challenge(header: str) -> tuple[str, int]:
    """
    Parse a challenge header.

    Returns:
        Tuple of (token, easiness).

    Raises:
        TransportError: If the header is not a version 1 challenge.
    """
    parts = header.strip().split(":")
    if len(parts) != 4 or parts[0] != "1":
        msg = f"Unsupported hashcash challenge: {header!r}"
        raise TransportError(msg)
    try:
        easiness = int(parts[1])
    except ValueError as e:
        msg = f"Invalid hashcash easiness: {parts[1]!r}"
        raise TransportError(msg) from e
    return parts[3], easiness


def threshold_for(easiness: int) -> int:
    base = ((easiness & 63) << 1) + 1
    shifts = (easiness >> 6) * 7 + 3
    return base << shifts


def solve_hashcash(token: str, easiness: int) -> str:
    """
    Find a 4-byte prefix whose SHA-256 over (prefix || token * 262144) is below the threshold.

    CPU bound; run it off the event loop.

    Returns:
        The header value to send back.
    """
    token_bytes = b64url_decode(token)
    if len(token_bytes) != _TOKEN_SIZE:
        msg = f"Hashcash token must be {_TOKEN_SIZE} bytes, got {len(token_bytes)}"
        raise TransportError(msg)

    threshold = threshold_for(easiness)
    buffer = bytearray(4) + token_bytes * _TOKEN_REPEATS
    while True:
        digest = hashlib.sha256(buffer).digest()
        if int.from_bytes(digest[:4], "big") <= threshold:
            return f"1:{token}:{b64url_encode(bytes(buffer[:4]))}"
        for i in range(4):
            buffer[i] = (buffer[i] + 1) & 0xFF
            if buffer[i] != 0:
                break
