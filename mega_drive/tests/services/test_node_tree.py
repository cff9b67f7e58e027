import secrets
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from mega_drive.api.dispatcher import SequenceCounter
from mega_drive.crypto.aes import encrypt_attributes, encrypt_key_blob
from mega_drive.crypto.encoding import b64url_encode
from mega_drive.crypto.rsa import RsaPrivateKey, encode_private_key, load_private_key, rsa_encrypt
from mega_drive.crypto.secure_bytes import SecureBytes
from mega_drive.exceptions import (
    CycleError,
    KeyUndecryptableError,
    OrphanNodeError,
    UnknownNodeError,
)
from mega_drive.models.auth import Session
from mega_drive.models.drive import NodeKind, NodeRecord
from mega_drive.services.node_tree import UNDECRYPTABLE_NAME, NodeTree, _format_size, split_path
from mega_drive.tests.utils.fake_transport import ROOT_ID, TRASH_ID, USER_HANDLE, FakeMegaServer


def _session(server: FakeMegaServer, private_key: RsaPrivateKey | None = None) -> Session:
    return Session(
        session_id="sid",
        user_handle=USER_HANDLE,
        sequence=SequenceCounter(0),
        _master_key=SecureBytes(server.master_key),
        _private_key=private_key,
    )


def _records(server: FakeMegaServer) -> list[NodeRecord]:
    return [NodeRecord.from_api(dict(node)) for node in server.nodes.values()]


@pytest.fixture
def drive() -> tuple[FakeMegaServer, dict[str, str]]:
    server = FakeMegaServer()
    docs = server.add_folder(ROOT_ID, "Docs")
    nested = server.add_folder(docs, "Nested")
    handles = {
        "docs": docs,
        "nested": nested,
        "a": server.add_file(docs, "a.txt", b"abc"),
        "top": server.add_file(ROOT_ID, "top.txt", b"hello"),
        "deep": server.add_file(nested, "deep.bin", bytes(2048)),
    }
    return server, handles


@pytest.fixture
def tree(drive: tuple[FakeMegaServer, dict[str, str]]) -> NodeTree:
    server, _ = drive
    tree = NodeTree(_session(server))
    tree.apply_listing(_records(server))
    return tree


# Ingestion


def test_listing_builds_decrypted_tree(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    server, handles = drive

    assert len(tree) == len(server.nodes)
    assert tree.root_id == ROOT_ID
    assert tree.trash_id == TRASH_ID
    assert tree.get(ROOT_ID).name == "Cloud Drive"
    assert tree.get(handles["docs"]).name == "Docs"
    assert tree.get(handles["a"]).size == 3
    assert tree.get(handles["a"]).content_handle == handles["a"]
    assert tree.resolve_key(handles["a"]) == server.node_key(handles["a"])


def test_children_before_parents_are_attached(
    drive: tuple[FakeMegaServer, dict[str, str]],
) -> None:
    server, handles = drive
    tree = NodeTree(_session(server))

    report = tree.apply_listing(reversed(_records(server)))

    assert report.is_clean
    assert sorted(report.added) == sorted(server.nodes)
    assert tree.find("/Docs/Nested/deep.bin").node_id == handles["deep"]


def test_incomplete_listing_keeps_pending_records(
    drive: tuple[FakeMegaServer, dict[str, str]],
) -> None:
    server, handles = drive
    records = _records(server)
    docs = next(r for r in records if r.node_id == handles["docs"])
    rest = [r for r in records if r.node_id != handles["docs"]]
    tree = NodeTree(_session(server))

    report = tree.apply_listing(rest, complete=False)

    assert report.pending == 3
    assert handles["a"] not in tree
    assert tree.pending_count == 3

    tree.apply_listing([docs])

    assert tree.pending_count == 0
    assert tree.get(handles["a"]).parent_id == handles["docs"]


def test_missing_parent_is_reported_as_orphan(
    drive: tuple[FakeMegaServer, dict[str, str]],
) -> None:
    server, handles = drive
    records = [r for r in _records(server) if r.node_id != handles["nested"]]
    tree = NodeTree(_session(server))

    report = tree.apply_listing(records)

    assert not report.is_clean
    assert [o.node_id for o in report.orphans] == [handles["deep"]]
    assert report.orphans[0].parent_id == handles["nested"]
    assert handles["deep"] not in tree
    assert [r.node_id for r in tree.orphans] == [handles["deep"]]


def test_parent_cycle_in_listing_never_attaches() -> None:
    server = FakeMegaServer()
    first = server.add_folder(ROOT_ID, "first")
    second = server.add_folder(first, "second")
    server.nodes[first]["p"] = second
    tree = NodeTree(_session(server))

    report = tree.apply_listing(_records(server))

    assert sorted(o.node_id for o in report.orphans) == sorted([first, second])
    assert first not in tree


def test_add_records_requires_known_parent(tree: NodeTree) -> None:
    record = NodeRecord(node_id="new", parent_id="missing", kind=NodeKind.FOLDER)

    with pytest.raises(OrphanNodeError):
        tree.add_records([record])


def test_foreign_key_is_undecryptable_but_kept() -> None:
    server = FakeMegaServer()
    handle = server.add_file(ROOT_ID, "secret.txt", b"data")
    _, wrapped = server.nodes[handle]["k"].split(":", 1)
    server.nodes[handle]["k"] = f"someoneelse:{wrapped}"
    tree = NodeTree(_session(server))

    report = tree.apply_listing(_records(server))

    assert [e.node_id for e in report.undecryptable] == [handle]
    assert tree.get(handle).name == UNDECRYPTABLE_NAME
    with pytest.raises(KeyUndecryptableError):
        tree.resolve_key(handle)


def test_corrupt_attributes_are_undecryptable() -> None:
    server = FakeMegaServer()
    handle = server.add_folder(ROOT_ID, "folder")
    server.nodes[handle]["a"] = b64url_encode(secrets.token_bytes(32))
    tree = NodeTree(_session(server))

    report = tree.apply_listing(_records(server))

    assert len(report.undecryptable) == 1
    assert tree.get(handle).name == UNDECRYPTABLE_NAME


def test_outgoing_share_key_unwraps_node() -> None:
    server = FakeMegaServer()
    share_key = secrets.token_bytes(16)
    node_key = secrets.token_bytes(16)
    handle = server.add_folder(ROOT_ID, "shared")
    server.nodes[handle]["k"] = f"SHARE001:{b64url_encode(encrypt_key_blob(node_key, share_key))}"
    server.nodes[handle]["a"] = b64url_encode(encrypt_attributes({"n": "shared"}, node_key))
    tree = NodeTree(_session(server))

    tree.apply_listing(
        _records(server),
        share_keys={"SHARE001": b64url_encode(encrypt_key_blob(share_key, server.master_key))},
    )

    assert tree.get(handle).name == "shared"
    assert tree.resolve_key(handle) == node_key


def test_inbound_share_root_has_no_parent(rsa_key: rsa.RSAPrivateKey) -> None:
    server = FakeMegaServer()
    share_key = secrets.token_bytes(16)
    record = NodeRecord(
        node_id="INSHARE1",
        parent_id="FOREIGN1",
        kind=NodeKind.FOLDER,
        owner="friend",
        encrypted_attributes=b64url_encode(encrypt_attributes({"n": "from friend"}, share_key)),
        key_field=f"INSHARE1:{b64url_encode(encrypt_key_blob(share_key, share_key))}",
        share_user="friend",
        share_key=b64url_encode(rsa_encrypt(share_key, rsa_key.public_key())),
    )
    private_key = load_private_key(encode_private_key(rsa_key))
    tree = NodeTree(_session(server, private_key))

    report = tree.apply_listing([*_records(server), record])

    assert report.is_clean
    node = tree.get("INSHARE1")
    assert node.parent_id is None
    assert node.name == "from friend"


# Queries


def test_find_and_children(drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree) -> None:
    _, handles = drive

    assert tree.find("/").node_id == ROOT_ID
    assert tree.find("Docs/a.txt").node_id == handles["a"]
    assert [n.name for n in tree.children_of(ROOT_ID)] == ["Docs", "top.txt"]
    assert tree.child_named(handles["docs"], "missing") is None
    with pytest.raises(UnknownNodeError):
        tree.find("/Docs/missing")


def test_find_in_trash(tree: NodeTree) -> None:
    assert tree.find("/", top_level=NodeKind.TRASH).name == "Rubbish Bin"


def test_path_helpers(drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree) -> None:
    _, handles = drive

    expected = [ROOT_ID, handles["docs"], handles["nested"], handles["deep"]]
    assert tree.path_of(handles["deep"]) == expected
    assert tree.path_string(handles["deep"]) == "/Docs/Nested/deep.bin"
    assert tree.is_ancestor(handles["docs"], handles["deep"])
    assert split_path("//a/b/") == ["a", "b"]


def test_unknown_node(tree: NodeTree) -> None:
    with pytest.raises(UnknownNodeError):
        tree.get("nope")
    with pytest.raises(UnknownNodeError):
        tree.children_of("nope")


def test_format_tree(tree: NodeTree) -> None:
    assert tree.format_tree() == "\n".join(
        [
            "[D] Cloud Drive",
            "  [D] Docs",
            "    [D] Nested",
            "      [F] deep.bin (2.0 KB)",
            "    [F] a.txt (3 B)",
            "  [F] top.txt (5 B)",
        ]
    )


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0 B"),
        (1023, "1023 B"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
        (3 * 1024**4, "3.0 TB"),
    ],
)
def test_format_size(size: int, expected: str) -> None:
    assert _format_size(size) == expected


# Optimistic mutations


def test_stage_move_and_rollback(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    _, handles = drive

    staged = tree.stage_move(handles["top"], handles["nested"])

    assert tree.get(handles["top"]).parent_id == handles["nested"]
    assert "top.txt" in [n.name for n in tree.children_of(handles["nested"])]

    tree.rollback(staged)

    assert tree.get(handles["top"]).parent_id == ROOT_ID
    assert "top.txt" not in [n.name for n in tree.children_of(handles["nested"])]


def test_move_below_itself_is_a_cycle(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    _, handles = drive

    with pytest.raises(CycleError):
        tree.stage_move(handles["docs"], handles["nested"])
    with pytest.raises(CycleError):
        tree.stage_move(handles["docs"], handles["docs"])
    assert tree.get(handles["docs"]).parent_id == ROOT_ID


def test_move_into_file_is_refused(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    _, handles = drive

    with pytest.raises(UnknownNodeError):
        tree.stage_move(handles["docs"], handles["top"])


def test_stage_rename_keeps_other_attributes() -> None:
    server = FakeMegaServer()
    handle = server.add_file(ROOT_ID, "old.txt", b"x", attributes={"c": "fingerprint"})
    tree = NodeTree(_session(server))
    tree.apply_listing(_records(server))

    staged = tree.stage_rename(handle, "new.txt")

    assert tree.get(handle).attributes.to_record() == {"n": "new.txt", "c": "fingerprint"}
    tree.rollback(staged)
    assert tree.get(handle).name == "old.txt"


def test_stage_delete_removes_subtree_and_rollback_restores(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    _, handles = drive
    before = len(tree)

    staged = tree.stage_delete(handles["docs"])

    assert len(tree) == before - 4
    assert handles["deep"] not in tree
    assert [n.name for n in tree.children_of(ROOT_ID)] == ["top.txt"]

    tree.rollback(staged)

    assert len(tree) == before
    assert tree.find("/Docs/Nested/deep.bin").node_id == handles["deep"]


def test_rollback_of_delete_restores_key_error() -> None:
    server = FakeMegaServer()
    handle = server.add_file(ROOT_ID, "secret.txt", b"data")
    _, wrapped = server.nodes[handle]["k"].split(":", 1)
    server.nodes[handle]["k"] = f"someoneelse:{wrapped}"
    tree = NodeTree(_session(server))
    tree.apply_listing(_records(server))

    tree.rollback(tree.stage_delete(handle))

    assert tree.get(handle).name == UNDECRYPTABLE_NAME
    with pytest.raises(KeyUndecryptableError, match="No available key"):
        tree.resolve_key(handle)


# Incremental listings


def test_orphan_attaches_when_parent_arrives_later(
    drive: tuple[FakeMegaServer, dict[str, str]],
) -> None:
    server, handles = drive
    records = _records(server)
    nested = next(r for r in records if r.node_id == handles["nested"])
    tree = NodeTree(_session(server))

    first = tree.apply_listing([r for r in records if r.node_id != handles["nested"]])

    assert [o.node_id for o in first.orphans] == [handles["deep"]]

    second = tree.apply_listing([nested])

    assert second.is_clean
    assert sorted(second.added) == sorted([handles["nested"], handles["deep"]])
    assert tree.orphans == []
    assert tree.find("/Docs/Nested/deep.bin").node_id == handles["deep"]


@pytest.mark.parametrize("new_parent", ["nested", "docs"])
def test_listing_cannot_hang_node_below_itself(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree, new_parent: str
) -> None:
    server, handles = drive
    docs = next(r for r in _records(server) if r.node_id == handles["docs"])

    report = tree.apply_listing([replace(docs, parent_id=handles[new_parent])])

    assert [c.node_id for c in report.cycles] == [handles["docs"]]
    assert not report.is_clean
    assert tree.get(handles["docs"]).parent_id == ROOT_ID
    assert tree.path_string(handles["deep"]) == "/Docs/Nested/deep.bin"
    assert tree.format_tree(handles["docs"]).splitlines()[0] == "[D] Docs"


def test_add_records_refuses_cyclic_record(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    server, handles = drive
    docs = next(r for r in _records(server) if r.node_id == handles["docs"])

    with pytest.raises(CycleError):
        tree.add_records([replace(docs, parent_id=handles["nested"])])


def test_traversals_terminate_on_looping_parent_links(
    drive: tuple[FakeMegaServer, dict[str, str]], tree: NodeTree
) -> None:
    _, handles = drive
    tree._put(tree.get(handles["docs"]).moved_to(handles["nested"]))

    assert tree.format_tree(handles["docs"]).splitlines() == [
        "[D] Docs",
        "  [D] Nested",
        "    [F] deep.bin (2.0 KB)",
        "  [F] a.txt (3 B)",
    ]
    staged = tree.stage_delete(handles["docs"])

    assert len(staged.previous) == 4
    assert handles["deep"] not in tree
