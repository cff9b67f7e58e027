import hashlib

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from mega_drive.crypto.encoding import b64url_decode, b64url_encode
from mega_drive.crypto.kdf import derive_master_key, derive_v2, user_hash_v1
from mega_drive.crypto.secure_bytes import SecureBytes

ROUNDS = 8


def _reference_prepare_key(password: bytes, rounds: int) -> bytes:
    """Straightforward word-level rendition of the v1 stretching loop."""
    seed = [0x93C467E3, 0x7DB0C7A4, 0xD1BE3F81, 0x0152CB56]
    key = b"".join(w.to_bytes(4, "big") for w in seed)
    padded = password + bytes(-len(password) % 16)
    for _ in range(rounds):
        for i in range(0, len(padded), 16):
            cipher = Cipher(algorithms.AES(padded[i : i + 16]), modes.ECB()).encryptor()
            key = cipher.update(key) + cipher.finalize()
    return key


def test_derive_master_key_matches_reference() -> None:
    password = b"a password longer than one block"

    assert derive_master_key(password, ROUNDS) == _reference_prepare_key(password, ROUNDS)


def test_derive_master_key_is_deterministic() -> None:
    assert derive_master_key(b"secret", ROUNDS) == derive_master_key(b"secret", ROUNDS)
    assert len(derive_master_key(b"secret", ROUNDS)) == 16


def test_derive_master_key_depends_on_secret_and_rounds() -> None:
    base = derive_master_key(b"secret", ROUNDS)

    assert derive_master_key(b"Secret", ROUNDS) != base
    assert derive_master_key(b"secret", ROUNDS + 1) != base


def test_derive_master_key_accepts_secure_bytes() -> None:
    with SecureBytes(b"secret") as secret:
        assert derive_master_key(secret, ROUNDS) == derive_master_key(b"secret", ROUNDS)


def test_derive_master_key_rejects_non_positive_rounds() -> None:
    with pytest.raises(ValueError):
        derive_master_key(b"secret", 0)


def test_user_hash_v1_is_case_insensitive_on_identity() -> None:
    key = derive_master_key(b"secret", ROUNDS)

    assert user_hash_v1("User@Example.com", key) == user_hash_v1("user@example.com", key)


def test_user_hash_v1_is_eight_bytes() -> None:
    key = derive_master_key(b"secret", ROUNDS)

    assert len(b64url_decode(user_hash_v1("user@example.com", key))) == 8


def test_user_hash_v1_depends_on_password_key() -> None:
    first = user_hash_v1("user@example.com", derive_master_key(b"one", ROUNDS))
    second = user_hash_v1("user@example.com", derive_master_key(b"two", ROUNDS))

    assert first != second


def test_derive_v2_splits_pbkdf2_output() -> None:
    salt = b"s" * 32
    expected = hashlib.pbkdf2_hmac("sha512", b"secret", salt, 50, dklen=32)

    password_key, user_hash = derive_v2(b"secret", salt, 50)

    assert password_key == expected[:16]
    assert user_hash == b64url_encode(expected[16:])
