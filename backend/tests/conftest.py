# backend/tests/conftest.py
import os
import tempfile

# 설정 모듈이 import 되기 전에 테스트용 환경 변수를 고정합니다.
_TMP_DIR = tempfile.mkdtemp(prefix="messenger-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TMP_DIR, 'chat.db')}"
os.environ["DB_POOL"] = "null"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CHAT_ENCRYPTION_KEY"] = "test-chat-encryption-key"
os.environ["CHAT_REQUIRE_ENCRYPTION_KEY"] = "0"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"

import pytest
from sqlalchemy import select, func

from messenger.core.rate_limit import RateLimiter, rate_limiter
from messenger.core.security import AuthenticatedUser, create_access_token
from messenger.db.database import AsyncSessionLocal, Base, engine
from messenger.db.models import user, conversation, message, typing_status, notification  # 테이블 등록
from messenger.db.models.user import User
from messenger.services import notification_service
from messenger.services.notification_service import NotificationDispatcher
from messenger.sockets import chat_socket
from messenger.sockets.chat_socket import ChatGateway


class PublishRecorder:
    """RedisManager.publish_chat_notification 대체용."""

    def __init__(self):
        self.calls = []
        self.fail = False

    async def __call__(self, user_id: int, payload: dict):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.calls.append((user_id, payload))
        return 1


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, data):
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def events(self, name: str):
        return [m["data"] for m in self.sent if m["event"] == name]

    def names(self):
        return [m["event"] for m in self.sent]

    def clear(self):
        self.sent.clear()


@pytest.fixture(autouse=True)
async def tables():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def publisher(monkeypatch):
    recorder = PublishRecorder()
    monkeypatch.setattr(notification_service, "dispatcher", NotificationDispatcher(publisher=recorder))
    return recorder


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limiter.clear()
    yield
    rate_limiter.clear()


@pytest.fixture
def dispatcher():
    return notification_service.get_dispatcher()


@pytest.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
async def users():
    """id 1~10 유저를 만듭니다. 표시 이름은 User<id>."""
    async with AsyncSessionLocal() as session:
        session.add_all([
            User(id=i, username=f"user{i}", nickname=f"User{i}", is_active=True, is_online=False)
            for i in range(1, 11)
        ])
        await session.commit()
    return list(range(1, 11))


@pytest.fixture
async def gateway(monkeypatch):
    gw = ChatGateway(limiter=RateLimiter())
    monkeypatch.setattr(chat_socket, "gateway", gw)
    yield gw
    for connection in gw.registry.all_connections():
        await connection.stop()


@pytest.fixture
def connect(gateway):
    async def _connect(user_id: int):
        websocket = FakeWebSocket()
        connection = await gateway.handle_connect(websocket, AuthenticatedUser(user_id, f"User{user_id}"))
        for live in gateway.registry.all_connections():
            await live.drain()
        return connection, websocket

    return _connect


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


async def count_rows(model) -> int:
    async with AsyncSessionLocal() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()
