"""
Command builders and typed response decoders for the MEGA command API.

Each builder returns a Command; each opcode has one decoder turning the raw
JSON entry at its batch position into the matching result model. A decoder
that meets an unexpected shape raises ResponseMismatchError, so a response
array shifted by one position cannot be silently mis-assigned.
"""

from collections.abc import Callable
from enum import IntEnum
from typing import Any

from mega_drive.exceptions import (
    AccessDeniedError,
    CommandError,
    InvalidRequestError,
    NotFoundError,
    QuotaExceededError,
    RateLimitError,
    ResponseMismatchError,
    SessionExpiredError,
    TemporarilyUnavailableError,
)
from mega_drive.models.auth import LoginChallenge, PreloginInfo, UserInfo
from mega_drive.models.commands import (
    Ack,
    Command,
    CommandResult,
    CreatedNodes,
    DownloadLocator,
    Opcode,
    TreeListing,
    UploadLocator,
)
from mega_drive.models.drive import NodeKind, NodeRecord


class ErrorCode(IntEnum):
    """MEGA API result codes."""

    EINTERNAL = -1
    EARGS = -2
    EAGAIN = -3
    ERATELIMIT = -4
    EFAILED = -5
    ETOOMANY = -6
    ERANGE = -7
    EEXPIRED = -8
    ENOENT = -9
    ECIRCULAR = -10
    EACCESS = -11
    EEXIST = -12
    EINCOMPLETE = -13
    EKEY = -14
    ESID = -15
    EBLOCKED = -16
    EOVERQUOTA = -17
    ETEMPUNAVAIL = -18
    ETOOMANYCONNECTIONS = -19
    EMFAREQUIRED = -26


_ERROR_CLASSES: dict[int, type[CommandError]] = {
    ErrorCode.EAGAIN: TemporarilyUnavailableError,
    ErrorCode.ETEMPUNAVAIL: TemporarilyUnavailableError,
    ErrorCode.ERATELIMIT: RateLimitError,
    ErrorCode.EARGS: InvalidRequestError,
    ErrorCode.ENOENT: NotFoundError,
    ErrorCode.EACCESS: AccessDeniedError,
    ErrorCode.EOVERQUOTA: QuotaExceededError,
    ErrorCode.ESID: SessionExpiredError,
}


def error_name(code: int) -> str:
    try:
        return ErrorCode(code).name
    except ValueError:
        return f"E{code}"


def command_error_for(
    code: int,
    *,
    opcode: str | None = None,
    sequence: int | None = None,
) -> CommandError:
    """
    Map a negative result code to its exception.

    Args:
        code: Negative result code from the server.
        opcode: Opcode of the failed command, if known.
        sequence: Sequence number the command was sent under.

    Returns:
        The exception instance (not raised).
    """
    error_cls = _ERROR_CLASSES.get(code, CommandError)
    msg = f"Command failed with {error_name(code)}"
    return error_cls(msg, code=code, opcode=opcode, sequence=sequence)


def is_error_code(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value < 0


# Builders


def prelogin(email: str) -> Command:
    return Command(opcode=Opcode.PRELOGIN, args={"user": email.lower()})


def login(email: str, user_hash: str) -> Command:
    return Command(opcode=Opcode.LOGIN, args={"user": email.lower(), "uh": user_hash})


def user_info() -> Command:
    return Command(opcode=Opcode.USER_INFO)


def logout() -> Command:
    return Command(opcode=Opcode.LOGOUT, idempotent=False)


def list_tree() -> Command:
    return Command(opcode=Opcode.LIST_TREE, args={"c": 1, "r": 1})


def download_url(node_id: str, *, ssl: bool = True) -> Command:
    args: dict[str, Any] = {"g": 1, "n": node_id}
    if ssl:
        args["ssl"] = 2
    return Command(opcode=Opcode.DOWNLOAD_URL, args=args)


def upload_url(size: int, *, ssl: bool = True) -> Command:
    args: dict[str, Any] = {"s": size}
    if ssl:
        args["ssl"] = 2
    return Command(opcode=Opcode.UPLOAD_URL, args=args, idempotent=False)


def create_nodes(
    parent_id: str,
    *,
    completion_handle: str,
    kind: NodeKind,
    encrypted_attributes: str,
    wrapped_key: str,
) -> Command:
    """
    Create a single node under parent_id.

    For files, completion_handle is the token returned by the last upload
    chunk; for folders it is the placeholder ``xxxxxxxx``.
    """
    node = {
        "h": completion_handle,
        "t": int(kind),
        "a": encrypted_attributes,
        "k": wrapped_key,
    }
    return Command(
        opcode=Opcode.CREATE_NODES,
        args={"t": parent_id, "n": [node]},
        idempotent=False,
    )


def move(node_id: str, parent_id: str) -> Command:
    return Command(opcode=Opcode.MOVE, args={"n": node_id, "t": parent_id})


def set_attributes(node_id: str, encrypted_attributes: str, wrapped_key: str) -> Command:
    return Command(
        opcode=Opcode.SET_ATTRIBUTES,
        args={"n": node_id, "attr": encrypted_attributes, "key": wrapped_key},
    )


def delete(node_id: str) -> Command:
    return Command(opcode=Opcode.DELETE, args={"n": node_id}, idempotent=False)


# Decoders


def _mismatch(opcode: Opcode, raw: Any) -> ResponseMismatchError:
    kind = type(raw).__name__
    return ResponseMismatchError(
        f"Unexpected {kind} in response for {opcode.value}",
        opcode=opcode.value,
    )


def _expect_dict(opcode: Opcode, raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise _mismatch(opcode, raw)
    return raw


def _decode_prelogin(raw: Any) -> PreloginInfo:
    data = _expect_dict(Opcode.PRELOGIN, raw)
    if "v" not in data:
        raise _mismatch(Opcode.PRELOGIN, raw)
    return PreloginInfo.from_api(data)


def _decode_login(raw: Any) -> LoginChallenge:
    data = _expect_dict(Opcode.LOGIN, raw)
    if "k" not in data and "csid" not in data and "tsid" not in data:
        raise _mismatch(Opcode.LOGIN, raw)
    return LoginChallenge.from_api(data)


def _decode_user_info(raw: Any) -> UserInfo:
    data = _expect_dict(Opcode.USER_INFO, raw)
    if "u" not in data:
        raise _mismatch(Opcode.USER_INFO, raw)
    return UserInfo(user_handle=data["u"], email=data.get("email", ""), name=data.get("name"))


def _decode_records(opcode: Opcode, items: Any) -> list[NodeRecord]:
    if not isinstance(items, list):
        raise _mismatch(opcode, items)
    records = []
    for item in items:
        if not isinstance(item, dict):
            raise _mismatch(opcode, item)
        try:
            records.append(NodeRecord.from_api(item))
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Malformed node record in response for {opcode.value}: {e}"
            raise ResponseMismatchError(msg, opcode=opcode.value) from e
    return records


def _decode_listing(raw: Any) -> TreeListing:
    data = _expect_dict(Opcode.LIST_TREE, raw)
    if "f" not in data:
        raise _mismatch(Opcode.LIST_TREE, raw)
    share_keys = {
        entry["h"]: entry["k"]
        for entry in data.get("ok") or []
        if isinstance(entry, dict) and "h" in entry and "k" in entry
    }
    return TreeListing(
        records=_decode_records(Opcode.LIST_TREE, data["f"]),
        share_keys=share_keys,
    )


def _decode_download(raw: Any) -> DownloadLocator:
    data = _expect_dict(Opcode.DOWNLOAD_URL, raw)
    if "g" not in data or "s" not in data:
        raise _mismatch(Opcode.DOWNLOAD_URL, raw)
    url = data["g"]
    if isinstance(url, list):
        url = url[0] if url else ""
    if not isinstance(url, str) or not url:
        raise _mismatch(Opcode.DOWNLOAD_URL, raw)
    return DownloadLocator(url=url, size=int(data["s"]), encrypted_attributes=data.get("at", ""))


def _decode_upload(raw: Any) -> UploadLocator:
    data = _expect_dict(Opcode.UPLOAD_URL, raw)
    if not isinstance(data.get("p"), str):
        raise _mismatch(Opcode.UPLOAD_URL, raw)
    return UploadLocator(url=data["p"])


def _decode_created(raw: Any) -> CreatedNodes:
    data = _expect_dict(Opcode.CREATE_NODES, raw)
    if "f" not in data:
        raise _mismatch(Opcode.CREATE_NODES, raw)
    return CreatedNodes(records=_decode_records(Opcode.CREATE_NODES, data["f"]))


def _ack_decoder(opcode: Opcode) -> Callable[[Any], Ack]:
    def _decode(raw: Any) -> Ack:
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise _mismatch(opcode, raw)
        return Ack(raw)

    return _decode


_DECODERS: dict[Opcode, Callable[[Any], CommandResult]] = {
    Opcode.PRELOGIN: _decode_prelogin,
    Opcode.LOGIN: _decode_login,
    Opcode.USER_INFO: _decode_user_info,
    Opcode.LOGOUT: _ack_decoder(Opcode.LOGOUT),
    Opcode.LIST_TREE: _decode_listing,
    Opcode.DOWNLOAD_URL: _decode_download,
    Opcode.UPLOAD_URL: _decode_upload,
    Opcode.CREATE_NODES: _decode_created,
    Opcode.MOVE: _ack_decoder(Opcode.MOVE),
    Opcode.SET_ATTRIBUTES: _ack_decoder(Opcode.SET_ATTRIBUTES),
    Opcode.DELETE: _ack_decoder(Opcode.DELETE),
}


def decode_result(opcode: Opcode, raw: Any) -> CommandResult:
    """
    Decode the success payload of one command.

    Negative result codes must be handled by the caller before decoding.

    Raises:
        ResponseMismatchError: If the payload does not have the opcode's shape.
    """
    try:
        return _DECODERS[opcode](raw)
    except (KeyError, TypeError, ValueError) as e:
        msg = f"Malformed response for {opcode.value}: {e}"
        raise ResponseMismatchError(msg, opcode=opcode.value) from e
