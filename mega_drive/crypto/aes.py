"""
AES primitives used by the MEGA protocol.

- ECB key wrapping for node keys, share keys and the master key
- CTR keystream for file content, resumable at any byte offset
- CBC (zero IV) for attribute blobs
"""

import json
from typing import Any

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mega_drive.crypto.encoding import pad_to_block
from mega_drive.exceptions import CryptoError, KeyFormatError
from mega_drive.models.crypto import AES_BLOCK_SIZE, AES_KEY_SIZE, CounterState

_ATTR_PREFIX = b"MEGA"
_ZERO_IV = bytes(AES_BLOCK_SIZE)


def _check_key(key: bytes) -> None:
    if len(key) != AES_KEY_SIZE:
        msg = f"AES key must be {AES_KEY_SIZE} bytes, got {len(key)}"
        raise KeyFormatError(msg)


def _check_blob(blob: bytes) -> None:
    if len(blob) == 0 or len(blob) % AES_BLOCK_SIZE:
        msg = f"Key blob length must be a positive multiple of {AES_BLOCK_SIZE}, got {len(blob)}"
        raise KeyFormatError(msg)


def encrypt_key_blob(blob: bytes, wrapping_key: bytes) -> bytes:
    """
    Wrap key material with another key (AES-ECB, block by block).

    Raises:
        KeyFormatError: If either argument has an invalid length.
    """
    _check_key(wrapping_key)
    _check_blob(blob)
    encryptor = Cipher(algorithms.AES(wrapping_key), modes.ECB()).encryptor()
    return encryptor.update(blob) + encryptor.finalize()


def decrypt_key_blob(blob: bytes, wrapping_key: bytes) -> bytes:
    """
    Unwrap key material encrypted with another key.

    There is no integrity tag: a wrong wrapping key yields garbage that only
    fails later (bad RSA key, MAC mismatch, undecodable attributes).

    Raises:
        KeyFormatError: If either argument has an invalid length.
    """
    _check_key(wrapping_key)
    _check_blob(blob)
    decryptor = Cipher(algorithms.AES(wrapping_key), modes.ECB()).decryptor()
    return decryptor.update(blob) + decryptor.finalize()


def stream_cipher_transform(
    buffer: bytes, key: bytes, counter_state: CounterState
) -> tuple[bytes, CounterState]:
    """
    XOR a buffer with the AES-CTR keystream starting at counter_state.

    Encryption and decryption are the same operation. The returned state
    continues exactly where this buffer ended, so consecutive calls over
    adjacent buffers equal a single call over their concatenation.

    Args:
        buffer: Plaintext or ciphertext.
        key: 16-byte AES key.
        counter_state: Keystream position for the first byte of buffer.

    Returns:
        Tuple of (transformed bytes, state for the next byte).
    """
    _check_key(key)
    if not buffer:
        return b"", counter_state

    encryptor = Cipher(
        algorithms.AES(key), modes.CTR(counter_state.counter_block())
    ).encryptor()
    skip = counter_state.block_offset
    if skip:
        encryptor.update(bytes(skip))
    output = encryptor.update(buffer) + encryptor.finalize()
    return output, counter_state.advance(len(buffer))


def cbc_encrypt(data: bytes, key: bytes, iv: bytes = _ZERO_IV) -> bytes:
    """AES-CBC without padding; data must already be block aligned."""
    _check_key(key)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(data) + encryptor.finalize()


def cbc_decrypt(data: bytes, key: bytes, iv: bytes = _ZERO_IV) -> bytes:
    _check_key(key)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    return decryptor.update(data) + decryptor.finalize()


def encrypt_attributes(attributes: dict[str, Any], key: bytes) -> bytes:
    """
    Encrypt a node attribute record.

    Format: ``b"MEGA" + json`` zero-padded to the block size, AES-CBC with a zero IV.
    """
    payload = _ATTR_PREFIX + json.dumps(attributes, separators=(",", ":")).encode("utf-8")
    return cbc_encrypt(pad_to_block(payload), key)


def decrypt_attributes(blob: bytes, key: bytes) -> dict[str, Any]:
    """
    Decrypt a node attribute record.

    Raises:
        KeyFormatError: If the blob is not block aligned.
        CryptoError: If the plaintext is not a MEGA attribute record (usually a wrong key).
    """
    _check_blob(blob)
    plaintext = cbc_decrypt(blob, key).rstrip(b"\x00")
    if not plaintext.startswith(_ATTR_PREFIX + b"{"):
        msg = "Attribute blob is not a MEGA record, possibly wrong key"
        raise CryptoError(msg)

    text = plaintext[len(_ATTR_PREFIX) :].decode("utf-8", errors="replace")
    try:
        attributes, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as e:
        msg = f"Attribute record is not valid JSON: {e}"
        raise CryptoError(msg) from e
    if not isinstance(attributes, dict):
        msg = "Attribute record is not an object"
        raise CryptoError(msg)
    return attributes
