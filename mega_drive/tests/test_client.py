from collections.abc import AsyncGenerator, AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from mega_drive.client import MegaDriveClient
from mega_drive.config import MegaDriveConfig
from mega_drive.exceptions import BadSecretError, NotAuthenticatedError, UnknownNodeError
from mega_drive.tests.utils.fake_transport import (
    ROOT_ID,
    TEST_EMAIL,
    TEST_PASSWORD,
    USER_HANDLE,
    FakeHttpTransport,
    FakeMegaServer,
)

NOTES = b"hello"


async def _collect(chunks: AsyncIterator[bytes]) -> bytes:
    return b"".join([chunk async for chunk in chunks])


@pytest.fixture
def server() -> FakeMegaServer:
    server = FakeMegaServer()
    docs = server.add_folder(ROOT_ID, "Docs")
    server.add_file(docs, "notes.txt", NOTES)
    return server


@pytest_asyncio.fixture
async def client(
    server: FakeMegaServer, config: MegaDriveConfig
) -> AsyncGenerator[MegaDriveClient, None]:
    async with MegaDriveClient(config, transport=FakeHttpTransport(server)) as client:
        await client.authenticate(TEST_EMAIL, TEST_PASSWORD)
        yield client


@pytest.mark.asyncio
async def test_operations_require_authentication(
    server: FakeMegaServer, config: MegaDriveConfig
) -> None:
    async with MegaDriveClient(config, transport=FakeHttpTransport(server)) as client:
        assert not client.is_authenticated
        with pytest.raises(NotAuthenticatedError):
            await client.list_directory("/")
        with pytest.raises(NotAuthenticatedError):
            client.format_tree()
        with pytest.raises(NotAuthenticatedError):
            await client.upload("/", "x.txt", b"x")

    assert server.batches == []


@pytest.mark.asyncio
async def test_authenticate_and_user_info(client: MegaDriveClient) -> None:
    info = await client.user_info()

    assert client.is_authenticated
    assert info.user_handle == USER_HANDLE
    assert info.email == TEST_EMAIL


@pytest.mark.asyncio
async def test_wrong_password(server: FakeMegaServer, config: MegaDriveConfig) -> None:
    async with MegaDriveClient(config, transport=FakeHttpTransport(server)) as client:
        with pytest.raises(BadSecretError):
            await client.authenticate(TEST_EMAIL, "wrong")
        assert not client.is_authenticated


@pytest.mark.asyncio
async def test_browse_tree(client: MegaDriveClient) -> None:
    report = await client.refresh_tree()

    assert report.is_clean
    assert [n.name for n in await client.list_directory("/")] == ["Docs"]
    assert (await client.get_node("/Docs/notes.txt")).size == len(NOTES)
    assert await client.get_node("/Docs/missing.txt") is None
    assert client.format_tree("/Docs") == "[D] Docs\n  [F] notes.txt (5 B)"


@pytest.mark.asyncio
async def test_list_directory_of_file(client: MegaDriveClient) -> None:
    with pytest.raises(UnknownNodeError):
        await client.list_directory("/Docs/notes.txt")


@pytest.mark.asyncio
async def test_folder_operations(server: FakeMegaServer, client: MegaDriveClient) -> None:
    projects = await client.create_folder("/", "Projects")
    await client.rename("/Projects", "Work")
    await client.move("/Docs/notes.txt", "/Work")
    await client.delete("/Docs")

    assert [n.name for n in await client.list_directory("/")] == ["Work"]
    assert [n.name for n in await client.list_directory("/Work")] == ["notes.txt"]
    assert server.attributes_of(projects.node_id) == {"n": "Work"}

    await client.refresh_tree()

    assert client.format_tree() == "[D] Cloud Drive\n  [D] Work\n    [F] notes.txt (5 B)"


@pytest.mark.asyncio
async def test_upload_and_download(client: MegaDriveClient, tmp_path: Path) -> None:
    content = bytes(range(256)) * 2000

    node = await client.upload("/Docs", "data.bin", content)
    destination = tmp_path / "data.bin"
    await client.download_to_file("/Docs/data.bin", destination)

    assert node.size == len(content)
    assert await _collect(client.download_file("/Docs/data.bin")) == content
    assert destination.read_bytes() == content


@pytest.mark.asyncio
async def test_streamed_upload_requires_size(client: MegaDriveClient) -> None:
    async def source() -> AsyncIterator[bytes]:
        yield b"chunk"

    with pytest.raises(ValueError, match="size"):
        await client.upload("/", "stream.bin", source())

    node = await client.upload("/", "stream.bin", source(), 5)

    assert await _collect(client.download_file("/stream.bin")) == b"chunk"
    assert node.name == "stream.bin"


@pytest.mark.asyncio
async def test_upload_file_from_disk(client: MegaDriveClient, tmp_path: Path) -> None:
    source = tmp_path / "local.txt"
    source.write_bytes(b"from disk")

    await client.upload_file(source, "/Docs")

    assert await _collect(client.download_file("/Docs/local.txt")) == b"from disk"


@pytest.mark.asyncio
async def test_logout_then_login_again(server: FakeMegaServer, client: MegaDriveClient) -> None:
    await client.logout()

    assert not client.is_authenticated
    assert server.session_id is None
    with pytest.raises(NotAuthenticatedError):
        await client.refresh_tree()

    await client.authenticate(TEST_EMAIL, TEST_PASSWORD)

    assert client.is_authenticated
    assert [n.name for n in await client.list_directory("/")] == ["Docs"]


@pytest.mark.asyncio
async def test_close_forgets_session(server: FakeMegaServer, config: MegaDriveConfig) -> None:
    client = MegaDriveClient(config, transport=FakeHttpTransport(server))
    await client.authenticate(TEST_EMAIL, TEST_PASSWORD)

    await client.close()

    assert not client.is_authenticated
