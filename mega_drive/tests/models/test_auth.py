import pytest

from mega_drive.api.dispatcher import SequenceCounter
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import NotAuthenticatedError
from mega_drive.models.auth import LoginChallenge, PreloginInfo, Session


def _session() -> Session:
    return Session(
        session_id="sid",
        user_handle="user",
        sequence=SequenceCounter(0),
        _master_key=SecureBytes(bytes(range(16))),
    )


def test_prelogin_from_api_defaults_to_v1() -> None:
    assert PreloginInfo.from_api({}).version == 1


def test_prelogin_v2_requires_salt() -> None:
    with pytest.raises(ValueError):
        PreloginInfo.from_api({"v": 2})
    assert PreloginInfo.from_api({"v": 2, "s": "c2FsdA"}).salt == "c2FsdA"


def test_prelogin_rejects_unknown_version() -> None:
    with pytest.raises(ValueError):
        PreloginInfo(version=3)


def test_login_challenge_from_api_and_repr() -> None:
    challenge = LoginChallenge.from_api({"k": "wrapped", "tsid": "temp", "u": "user"})

    assert challenge.master_key == "wrapped"
    assert challenge.tsid == "temp"
    assert challenge.csid is None
    assert "wrapped" not in repr(challenge)


def test_open_session_exposes_master_key() -> None:
    session = _session()

    assert session.is_open
    assert session.master_key == bytes(range(16))
    assert not session.has_private_key


def test_ephemeral_session_has_no_private_key() -> None:
    with pytest.raises(NotAuthenticatedError):
        _ = _session().private_key


def test_wiped_session_refuses_key_access() -> None:
    session = _session()

    session.wipe()

    assert not session.is_open
    with pytest.raises(NotAuthenticatedError):
        _ = session.master_key
