import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from dm_service.core.config import Settings
from dm_service.database.connection import StorePolicy
from dm_service.main import create_app
from dm_service.repositories.conversation_repository import ConversationRepository
from dm_service.repositories.message_repository import MessageRepository, ReadStateRepository
from dm_service.repositories.user_repository import UserRepository
from dm_service.services.conversation_service import ConversationStore
from dm_service.services.directory_service import UserDirectory
from dm_service.services.message_service import MessageStore
from dm_service.utils.security import create_access_token


TEST_SECRET = "test-secret"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        JWT_SECRET=TEST_SECRET,
        LOG_LEVEL="WARNING",
        REDIS_URL=None,
        FCM_SERVICE_ACCOUNT_FILE=None,
        FCM_PROJECT_ID=None,
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["dm_test"]


@pytest.fixture
def policy() -> StorePolicy:
    return StorePolicy(timeout=2.0, read_retries=0)


@pytest.fixture
def user_repo(db, policy) -> UserRepository:
    return UserRepository(db, policy)


@pytest.fixture
def directory(user_repo) -> UserDirectory:
    return UserDirectory(user_repo, ttl_seconds=30)


@pytest.fixture
def conversation_repo(db, policy) -> ConversationRepository:
    return ConversationRepository(db, policy)


@pytest.fixture
def conversations(conversation_repo, directory) -> ConversationStore:
    return ConversationStore(conversation_repo, directory)


@pytest.fixture
def messages(db, policy, conversation_repo, conversations) -> MessageStore:
    return MessageStore(MessageRepository(db, policy), ReadStateRepository(db, policy), conversation_repo, conversations)


@pytest.fixture
async def registered(user_repo):
    """Registers the given user ids in the directory store."""

    async def _register(*user_ids: str) -> None:
        for uid in user_ids:
            await user_repo.upsert_registration(uid, username=uid, display_name=uid.upper(), avatar="")

    return _register


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, TEST_SECRET)}"}


@pytest.fixture
def client(settings, db):
    app = create_app(settings, database=db)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def register_via_api(client):
    def _register(*user_ids: str) -> None:
        for uid in user_ids:
            resp = client.post("/users/register", json={"username": uid, "displayName": uid.upper()}, headers=auth(uid))
            assert resp.status_code == 200, resp.text

    return _register
