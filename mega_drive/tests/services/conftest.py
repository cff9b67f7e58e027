import pytest
import pytest_asyncio

from mega_drive.api.dispatcher import CommandDispatcher
from mega_drive.config import MegaDriveConfig
from mega_drive.services.auth_service import AuthService
from mega_drive.services.file_service import FileService
from mega_drive.services.session_manager import SessionManager
from mega_drive.services.transfer_engine import TransferEngine
from mega_drive.services.tree_service import TreeService
from mega_drive.tests.utils.fake_transport import TEST_EMAIL, TEST_PASSWORD, FakeMegaServer


@pytest.fixture
def server() -> FakeMegaServer:
    return FakeMegaServer()


@pytest.fixture
def sessions(config: MegaDriveConfig) -> SessionManager:
    return SessionManager(config, sequence_start=1)


@pytest.fixture
def dispatcher(
    server: FakeMegaServer, sessions: SessionManager, config: MegaDriveConfig
) -> CommandDispatcher:
    return CommandDispatcher(server, sessions, config)


@pytest.fixture
def auth_service(dispatcher: CommandDispatcher, sessions: SessionManager) -> AuthService:
    return AuthService(dispatcher, sessions)


@pytest_asyncio.fixture
async def authenticated(auth_service: AuthService) -> AuthService:
    await auth_service.authenticate(TEST_EMAIL, TEST_PASSWORD)
    return auth_service


@pytest.fixture
def tree_service(
    authenticated: AuthService,
    dispatcher: CommandDispatcher,
    sessions: SessionManager,
    config: MegaDriveConfig,
) -> TreeService:
    return TreeService(dispatcher, sessions, config)


@pytest.fixture
def file_service(
    tree_service: TreeService,
    server: FakeMegaServer,
    dispatcher: CommandDispatcher,
    sessions: SessionManager,
    config: MegaDriveConfig,
) -> FileService:
    return FileService(dispatcher, sessions, tree_service, TransferEngine(server), config)
