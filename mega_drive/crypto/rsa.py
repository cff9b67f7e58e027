"""
RSA support for MEGA sessions and inbound shares.

The account private key is stored as four concatenated MPIs (p, q, d, u),
wrapped with the master key. The session id and inbound share keys are
encrypted with raw (unpadded) RSA.
"""

import math
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mega_drive.crypto.encoding import read_mpi, write_mpi
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import KeyFormatError, RsaError

_PRIVATE_KEY_MPIS = 4


@dataclass
class RsaPrivateKey:
    """
    Session RSA private key.

    The decrypted key blob is held in SecureBytes so it can be zeroed on
    clear(); the parsed key object is dropped at the same time.
    """

    blob: SecureBytes = field(repr=False)
    _key: rsa.RSAPrivateKey | None = field(repr=False)

    @property
    def key(self) -> rsa.RSAPrivateKey:
        if self._key is None or self.blob.is_cleared:
            msg = "RSA private key has been cleared"
            raise RsaError(msg)
        return self._key

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.key.public_key()

    @property
    def modulus_size(self) -> int:
        """Modulus length in bytes."""
        return (self.key.key_size + 7) // 8

    @property
    def is_cleared(self) -> bool:
        return self._key is None

    def clear(self) -> None:
        self.blob.clear()
        self._key = None


def load_private_key(blob: bytes) -> RsaPrivateKey:
    """
    Parse an unwrapped private key blob (MPIs p, q, d, u; trailing padding ignored).

    Raises:
        KeyFormatError: If the MPIs are truncated.
        RsaError: If the components do not form a consistent RSA key.
    """
    offset = 0
    components = []
    for _ in range(_PRIVATE_KEY_MPIS):
        value, offset = read_mpi(blob, offset)
        components.append(value)
    p, q, d, _u = components

    try:
        private_key = _build_key(p, q, d)
    except (ValueError, ZeroDivisionError) as e:
        msg = f"Inconsistent RSA key components: {e}"
        raise RsaError(msg) from e

    return RsaPrivateKey(blob=SecureBytes(blob[:offset]), _key=private_key)


def _build_key(p: int, q: int, d: int) -> rsa.RSAPrivateKey:
    if p < 3 or q < 3 or d < 3:
        msg = "component out of range"
        raise ValueError(msg)
    n = p * q
    try:
        e = pow(d, -1, (p - 1) * (q - 1))
    except ValueError:
        e = pow(d, -1, math.lcm(p - 1, q - 1))
    numbers = rsa.RSAPrivateNumbers(
        p=p,
        q=q,
        d=d,
        dmp1=rsa.rsa_crt_dmp1(d, p),
        dmq1=rsa.rsa_crt_dmq1(d, q),
        iqmp=rsa.rsa_crt_iqmp(p, q),
        public_numbers=rsa.RSAPublicNumbers(e, n),
    )
    return numbers.private_key()


def encode_private_key(private_key: rsa.RSAPrivateKey) -> bytes:
    """Serialize a private key to the MPI blob format (unpadded)."""
    numbers = private_key.private_numbers()
    u = pow(numbers.p, -1, numbers.q)
    return b"".join(write_mpi(v) for v in (numbers.p, numbers.q, numbers.d, u))


def rsa_decrypt(ciphertext: bytes, private_key: RsaPrivateKey) -> bytes:
    """
    Raw RSA decryption of an MPI-encoded ciphertext.

    The result is left-padded to the modulus length and its two leading
    bytes are dropped, matching how MEGA frames RSA payloads.

    Raises:
        RsaError: If the ciphertext is malformed or out of range.
    """
    try:
        c, _ = read_mpi(ciphertext)
    except KeyFormatError as e:
        msg = f"Malformed RSA ciphertext: {e}"
        raise RsaError(msg) from e

    numbers = private_key.key.private_numbers()
    n = numbers.public_numbers.n
    if c >= n:
        msg = "RSA ciphertext out of range"
        raise RsaError(msg)

    m = pow(c, numbers.d, n)
    full = m.to_bytes(private_key.modulus_size, "big")
    if full[1] != 0:
        full = b"\x00" + full
    return full[2:]


def rsa_encrypt(payload: bytes, public_key: rsa.RSAPublicKey) -> bytes:
    """
    Raw RSA encryption, the inverse of rsa_decrypt.

    The payload is zero-padded to the modulus length minus two bytes.

    Returns:
        MPI-encoded ciphertext.
    """
    numbers = public_key.public_numbers()
    size = (public_key.key_size + 7) // 8 - 2
    if len(payload) > size:
        msg = f"Payload too long for RSA modulus: {len(payload)} > {size}"
        raise RsaError(msg)
    m = int.from_bytes(payload.ljust(size, b"\x00"), "big")
    return write_mpi(pow(m, numbers.e, numbers.n))


def rsa_sign(data: bytes, private_key: RsaPrivateKey) -> bytes:
    return private_key.key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def rsa_verify(signature: bytes, data: bytes, public_key: rsa.RSAPublicKey) -> bool:
    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True
