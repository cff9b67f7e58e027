"""Runs against a real MEGA account; everything is created under a scratch folder."""

import hashlib
import secrets
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from mega_drive.client import MegaDriveClient


@pytest_asyncio.fixture
async def authenticated_client(
    mega_credentials: tuple[str, str],
) -> AsyncGenerator[MegaDriveClient, None]:
    email, password = mega_credentials
    async with MegaDriveClient() as client:
        await client.authenticate(email, password)
        yield client
        await client.logout()


@pytest_asyncio.fixture
async def scratch_folder(authenticated_client: MegaDriveClient) -> AsyncGenerator[str, None]:
    name = f"mega_drive_test_{secrets.token_hex(4)}"
    await authenticated_client.create_folder("/", name)
    yield f"/{name}"
    await authenticated_client.delete(f"/{name}")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_authenticate_succeeds(authenticated_client: MegaDriveClient) -> None:
    assert authenticated_client.is_authenticated
    assert (await authenticated_client.user_info()).email


@pytest.mark.integration
@pytest.mark.asyncio
async def test_refresh_tree_is_readable(authenticated_client: MegaDriveClient) -> None:
    report = await authenticated_client.refresh_tree()

    assert not report.orphans
    assert authenticated_client.format_tree().startswith("[D] ")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_get_node_returns_none_for_missing_path(
    authenticated_client: MegaDriveClient,
) -> None:
    assert await authenticated_client.get_node("/this_path_does_not_exist_xyz") is None


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 1000, 3 * 1024 * 1024 + 17])
async def test_upload_download_hash_matches(
    authenticated_client: MegaDriveClient, scratch_folder: str, size: int
) -> None:
    content = secrets.token_bytes(size)

    await authenticated_client.upload(scratch_folder, "payload.bin", content)

    hasher = hashlib.sha256()
    async for chunk in authenticated_client.download_file(f"{scratch_folder}/payload.bin"):
        hasher.update(chunk)
    assert hasher.hexdigest() == hashlib.sha256(content).hexdigest()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rename_and_move(authenticated_client: MegaDriveClient, scratch_folder: str) -> None:
    await authenticated_client.create_folder(scratch_folder, "inner")
    await authenticated_client.upload(scratch_folder, "a.txt", b"a")

    await authenticated_client.rename(f"{scratch_folder}/a.txt", "b.txt")
    await authenticated_client.move(f"{scratch_folder}/b.txt", f"{scratch_folder}/inner")
    await authenticated_client.refresh_tree()

    names = [n.name for n in await authenticated_client.list_directory(f"{scratch_folder}/inner")]
    assert names == ["b.txt"]
