import asyncio
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from chatserver.core.config import Settings
from chatserver.main import create_app
from chatserver.repositories.conversation_repository import ConversationRepository
from chatserver.repositories.message_repository import MessageRepository
from chatserver.repositories.user_repository import UserRepository
from chatserver.services.conversation_service import ConversationService
from chatserver.services.membership import MembershipPropagator
from chatserver.services.message_service import MessageService
from chatserver.utils.realtime_bus import NoopBus, RoomBroadcaster
from chatserver.utils.security import TokenVerifier, create_access_token
from chatserver.utils.websocket_manager import Connection, ConnectionRegistry


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket is gone")
        self.sent.append(data)


def drain(connection: Connection) -> List[Dict[str, Any]]:
    """Pop every queued frame of a connection whose writer was never started."""
    frames = []
    while not connection.outbox.empty():
        frames.append(connection.outbox.get_nowait())
    return frames


def of_type(frames: List[Dict[str, Any]], kind: str) -> List[Dict[str, Any]]:
    return [f for f in frames if f["type"] == kind]


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings(jwt_secret_key="test-secret-key-with-at-least-32-bytes", redis_url=None, ws_auth_timeout_seconds=1.0, log_level="WARNING")


@pytest.fixture
def db():
    return AsyncMongoMockClient()["chat_test"]


@pytest.fixture
def token(settings):
    def _token(user_id: str) -> str:
        return create_access_token(user_id, settings)
    return _token


@pytest.fixture
def registry(settings) -> ConnectionRegistry:
    return ConnectionRegistry(TokenVerifier(settings), auth_timeout=1.0, send_queue_size=16)


@pytest.fixture
def broadcaster(registry) -> RoomBroadcaster:
    return RoomBroadcaster(registry, NoopBus())


@pytest.fixture
def conversation_repo(db) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def message_repo(db) -> MessageRepository:
    return MessageRepository(db)


@pytest.fixture
def message_service(db, broadcaster) -> MessageService:
    return MessageService(MessageRepository(db), ConversationRepository(db), UserRepository(db), broadcaster)


@pytest.fixture
def conversation_service(db, registry) -> ConversationService:
    message_repo = MessageRepository(db)
    return ConversationService(
        ConversationRepository(db),
        message_repo,
        UserRepository(db),
        MembershipPropagator(message_repo, registry),
    )


@pytest.fixture
def connect(registry, token):
    async def _connect(user_id: str, websocket=None) -> Connection:
        connection = registry.register(websocket or FakeWebSocket())
        await registry.authenticate(connection, token(user_id))
        return connection
    return _connect


@pytest.fixture
def app(settings, db):
    return create_app(settings, database=db)


@pytest.fixture
def client(app):
    # the context manager keeps one event loop for every request and socket
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(token):
    def _headers(user_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token(user_id)}"}
    return _headers
