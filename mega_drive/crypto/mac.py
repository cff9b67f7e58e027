"""
Two-level file MAC.

Each chunk gets a CBC-MAC over its plaintext (IV = nonce || nonce). The chunk
MACs are folded in order into a second CBC-MAC, which is finally condensed to
the 8-byte meta-MAC stored in the node key. The result depends on where chunk
boundaries fall, so both sides must use the same chunk schedule.
"""

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mega_drive.crypto.aes import cbc_encrypt
from mega_drive.crypto.encoding import from_words, pad_to_block, to_words, xor_bytes
from mega_drive.models.crypto import AES_BLOCK_SIZE, FileKey, MacState


def chunk_mac(plaintext: bytes, key: bytes, nonce: bytes) -> bytes:
    """
    CBC-MAC of a single chunk.

    Independent of other chunks, so it may be computed out of order; only the
    folding step (mac_fold) is order sensitive.
    """
    iv = nonce + nonce
    if not plaintext:
        return iv
    return cbc_encrypt(pad_to_block(plaintext), key, iv)[-AES_BLOCK_SIZE:]


def mac_fold(acc: MacState, chunk_mac_value: bytes, key: bytes) -> MacState:
    """Fold the next chunk MAC into the accumulator."""
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    value = encryptor.update(xor_bytes(acc.value, chunk_mac_value)) + encryptor.finalize()
    return MacState(value=value, chunks=acc.chunks + 1)


def mac_update(acc: MacState, plaintext: bytes, file_key: FileKey) -> MacState:
    """
    Account for the next chunk of plaintext.

    Args:
        acc: Accumulator after the previous chunk.
        plaintext: The whole chunk, exactly as cut by the chunk schedule.
        file_key: Key and nonce of the file.

    Returns:
        The new accumulator.
    """
    value = chunk_mac(plaintext, file_key.aes_key, file_key.nonce)
    return mac_fold(acc, value, file_key.aes_key)


def mac_finalize(acc: MacState) -> bytes:
    """Condense the accumulated 16-byte MAC into the 8-byte meta-MAC (m0^m1, m2^m3)."""
    m = to_words(acc.value)
    return from_words((m[0] ^ m[1], m[2] ^ m[3]))
