"""
Password-based key derivation for MEGA accounts.

v1 accounts stretch the password with repeated AES rounds ("prepare key").
v2 accounts use PBKDF2-HMAC-SHA512 over a server-provided salt.
"""

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mega_drive.crypto.encoding import b64url_encode, from_words, pad_to_block, to_words
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.models.crypto import AES_KEY_SIZE

DEFAULT_ROUNDS = 0x10000
USER_HASH_ROUNDS = 0x4000
V2_KEY_LENGTH = 32

_PREPARE_KEY_SEED = from_words((0x93C467E3, 0x7DB0C7A4, 0xD1BE3F81, 0x0152CB56))


def derive_master_key(secret: bytes | SecureBytes, salt_rounds: int = DEFAULT_ROUNDS) -> bytes:
    """
    Stretch a secret into a 16-byte AES key (v1 "prepare key").

    The fixed seed is encrypted salt_rounds times with every 16-byte slice of
    the zero-padded secret, in order. Deterministic for identical inputs.

    Args:
        secret: The user secret.
        salt_rounds: Number of stretching rounds.

    Returns:
        16-byte derived key.
    """
    if salt_rounds <= 0:
        msg = "salt_rounds must be positive"
        raise ValueError(msg)

    material = pad_to_block(bytes(secret))
    encryptors = [
        Cipher(algorithms.AES(material[i : i + AES_KEY_SIZE]), modes.ECB()).encryptor()
        for i in range(0, len(material), AES_KEY_SIZE)
    ]

    key = _PREPARE_KEY_SEED
    for _ in range(salt_rounds):
        for encryptor in encryptors:
            key = encryptor.update(key)
    return key


def user_hash_v1(identity: str, password_key: bytes) -> str:
    """
    Login proof for v1 accounts.

    The lower-cased identity is XOR-folded into four words, encrypted
    0x4000 times with the password key; words 0 and 2 are sent.
    """
    words = to_words(identity.lower().encode("utf-8"))
    folded = [0, 0, 0, 0]
    for i, word in enumerate(words):
        folded[i % 4] ^= word

    encryptor = Cipher(algorithms.AES(password_key), modes.ECB()).encryptor()
    block = from_words(folded)
    for _ in range(USER_HASH_ROUNDS):
        block = encryptor.update(block)

    h = to_words(block)
    return b64url_encode(from_words((h[0], h[2])))


def derive_v2(
    secret: bytes | SecureBytes, salt: bytes, iterations: int = 100_000
) -> tuple[bytes, str]:
    """
    Derive the password key and login proof for v2 accounts.

    Returns:
        Tuple of (16-byte password key, base64url user hash).
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=V2_KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    derived = kdf.derive(bytes(secret))
    return derived[:AES_KEY_SIZE], b64url_encode(derived[AES_KEY_SIZE:])
