import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from mega_drive.config import MegaDriveConfig
from mega_drive.tests.utils.fake_transport import TEST_ITERATIONS, TEST_ROUNDS


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=1024)


@pytest.fixture
def config() -> MegaDriveConfig:
    """Fast key derivation and no backoff sleeps."""
    return MegaDriveConfig(
        key_derivation_rounds=TEST_ROUNDS,
        pbkdf2_iterations=TEST_ITERATIONS,
        retry_delay=0,
        max_retry_delay=0,
    )
