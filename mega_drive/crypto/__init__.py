"""
Cryptographic operations for MEGA drive.

This module provides:
- AES key wrapping, CTR content encryption and attribute blobs
- The two-level chunk/file MAC
- Password key stretching (v1) and PBKDF2 (v2)
- Raw RSA for session ids and share keys
- Secure memory handling
"""

from mega_drive.crypto.aes import (
    decrypt_attributes,
    decrypt_key_blob,
    encrypt_attributes,
    encrypt_key_blob,
    stream_cipher_transform,
)
from mega_drive.crypto.kdf import derive_master_key, derive_v2, user_hash_v1
from mega_drive.crypto.mac import chunk_mac, mac_finalize, mac_fold, mac_update
from mega_drive.crypto.rsa import RsaPrivateKey, load_private_key, rsa_decrypt
from mega_drive.crypto.secure_bytes import SecureBytes

__all__ = [
    "SecureBytes",
    "RsaPrivateKey",
    "load_private_key",
    "rsa_decrypt",
    "derive_master_key",
    "derive_v2",
    "user_hash_v1",
    "encrypt_key_blob",
    "decrypt_key_blob",
    "stream_cipher_transform",
    "encrypt_attributes",
    "decrypt_attributes",
    "chunk_mac",
    "mac_fold",
    "mac_update",
    "mac_finalize",
]
