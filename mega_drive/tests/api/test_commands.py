import pytest

from mega_drive.api import commands
from mega_drive.api.commands import decode_result, error_name, is_error_code
from mega_drive.exceptions import ResponseMismatchError
from mega_drive.models.auth import LoginChallenge, PreloginInfo, UserInfo
from mega_drive.models.commands import (
    Ack,
    CreatedNodes,
    DownloadLocator,
    Opcode,
    TreeListing,
    UploadLocator,
)
from mega_drive.models.drive import NodeKind


def test_login_lowercases_identity() -> None:
    command = commands.login("User@Example.COM", "hash")

    assert command.to_wire() == {"a": "us", "user": "user@example.com", "uh": "hash"}


def test_list_tree_requests_full_listing() -> None:
    assert commands.list_tree().to_wire() == {"a": "f", "c": 1, "r": 1}


def test_download_url_requests_ssl_by_default() -> None:
    assert commands.download_url("node").to_wire() == {"a": "g", "g": 1, "n": "node", "ssl": 2}
    assert "ssl" not in commands.download_url("node", ssl=False).args


def test_create_nodes_payload() -> None:
    command = commands.create_nodes(
        "parent",
        completion_handle="xxxxxxxx",
        kind=NodeKind.FOLDER,
        encrypted_attributes="attrs",
        wrapped_key="key",
    )

    assert command.to_wire() == {
        "a": "p",
        "t": "parent",
        "n": [{"h": "xxxxxxxx", "t": 1, "a": "attrs", "k": "key"}],
    }
    assert not command.idempotent


def test_mutations_idempotency_flags() -> None:
    assert commands.move("n", "t").idempotent
    assert commands.set_attributes("n", "a", "k").idempotent
    assert not commands.delete("n").idempotent
    assert not commands.upload_url(10).idempotent
    assert not commands.logout().idempotent


def test_is_error_code() -> None:
    assert is_error_code(-3)
    assert not is_error_code(0)
    assert not is_error_code(True)
    assert not is_error_code("-3")


def test_error_name() -> None:
    assert error_name(-3) == "EAGAIN"
    assert error_name(-100) == "E-100"


def test_decode_prelogin() -> None:
    result = decode_result(Opcode.PRELOGIN, {"v": 2, "s": "salt"})

    assert result == PreloginInfo(version=2, salt="salt")


def test_decode_login() -> None:
    result = decode_result(Opcode.LOGIN, {"k": "key", "tsid": "t", "u": "user"})

    assert isinstance(result, LoginChallenge)
    assert result.user_handle == "user"


def test_decode_user_info() -> None:
    result = decode_result(Opcode.USER_INFO, {"u": "user", "email": "a@b.c"})

    assert result == UserInfo(user_handle="user", email="a@b.c")


def test_decode_listing_with_share_keys() -> None:
    raw = {
        "f": [{"h": "root", "p": "", "t": 2}, {"h": "f1", "p": "root", "t": 1, "a": "x"}],
        "ok": [{"h": "f1", "k": "sharekey"}],
    }

    result = decode_result(Opcode.LIST_TREE, raw)

    assert isinstance(result, TreeListing)
    assert [r.node_id for r in result.records] == ["root", "f1"]
    assert result.share_keys == {"f1": "sharekey"}


def test_decode_download_locator() -> None:
    result = decode_result(Opcode.DOWNLOAD_URL, {"g": "https://s/x", "s": 10, "at": "a"})

    assert result == DownloadLocator(url="https://s/x", size=10, encrypted_attributes="a")


def test_decode_download_locator_accepts_url_list() -> None:
    result = decode_result(Opcode.DOWNLOAD_URL, {"g": ["https://s/x"], "s": 10})

    assert result.url == "https://s/x"


def test_decode_upload_and_create() -> None:
    assert decode_result(Opcode.UPLOAD_URL, {"p": "https://s/u"}) == UploadLocator(
        url="https://s/u"
    )
    created = decode_result(Opcode.CREATE_NODES, {"f": [{"h": "n", "p": "root", "t": 1}]})
    assert isinstance(created, CreatedNodes)
    assert created.records[0].node_id == "n"


def test_decode_ack() -> None:
    assert decode_result(Opcode.MOVE, 0) == Ack(0)
    assert decode_result(Opcode.DELETE, "ok") == Ack("ok")


@pytest.mark.parametrize(
    ("opcode", "raw"),
    [
        (Opcode.PRELOGIN, 0),
        (Opcode.LOGIN, {"v": 1}),
        (Opcode.USER_INFO, {"email": "a@b.c"}),
        (Opcode.LIST_TREE, {"p": "url"}),
        (Opcode.LIST_TREE, {"f": [{"h": "n"}]}),
        (Opcode.DOWNLOAD_URL, {"g": "", "s": 1}),
        (Opcode.DOWNLOAD_URL, {"p": "url"}),
        (Opcode.UPLOAD_URL, {"g": "url", "s": 1}),
        (Opcode.CREATE_NODES, 0),
        (Opcode.MOVE, {"f": []}),
        (Opcode.MOVE, True),
    ],
)
def test_decode_rejects_shape_of_another_opcode(opcode: Opcode, raw: object) -> None:
    with pytest.raises(ResponseMismatchError):
        decode_result(opcode, raw)
