import pytest
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from messaging.auth import create_access_token
from messaging.database import create_tables, get_db
from messaging.dependencies import get_fanout, get_rate_limiter
from messaging.main import app
from messaging.rate_limit import SlidingWindowRateLimiter
from messaging.repositories.user_repository import UserRepository
from messaging.schemas.message import MessageCreate
from messaging.services.conversations import ConversationService
from messaging.services.fanout import DeliveryFanout
from messaging.services.messages import MessageService


class RecordingChannel:
    """Push channel double that remembers every notify call."""

    def __init__(self, online=None):
        self.events = []
        self.online = online

    async def notify(self, user_id, event, data):
        self.events.append((user_id, event, data))
        return self.online is None or user_id in self.online

    def for_user(self, user_id, event=None):
        return [
            data for recipient, name, data in self.events
            if recipient == user_id and (event is None or name == event)
        ]

    def clear(self):
        self.events.clear()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'messaging.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    async def factory(name="User", **kwargs):
        return await UserRepository(db).create(name=name, **kwargs)
    return factory


@pytest.fixture
async def alice(make_user):
    return await make_user("Alice", avatar_url="https://cdn.example.com/alice.png", is_verified=True)


@pytest.fixture
async def bob(make_user):
    return await make_user("Bob")


@pytest.fixture
async def carol(make_user):
    return await make_user("Carol")


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def fanout(channel):
    return DeliveryFanout(channel)


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def rate_limiter(redis_client):
    return SlidingWindowRateLimiter(redis_client, limit=100, window_seconds=60)


@pytest.fixture
def conversation_service(db):
    return ConversationService(db)


@pytest.fixture
def message_service(db, fanout, rate_limiter):
    return MessageService(db, fanout, rate_limiter)


@pytest.fixture
def direct_conversation(conversation_service, alice, bob):
    async def factory(first=None, second=None):
        conversation, _ = await conversation_service.find_or_create_direct(
            (first or alice).id, (second or bob).id
        )
        return conversation
    return factory


@pytest.fixture
def send(message_service):
    async def sender(user, conversation, content="hello", **kwargs):
        result = await message_service.send(
            user, MessageCreate(conversation_id=conversation.id, content=content, **kwargs)
        )
        return result.message
    return sender


@pytest.fixture
def auth_headers():
    def build(user):
        return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}
    return build


@pytest.fixture
async def client(session_factory, fanout, rate_limiter):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_fanout] = lambda: fanout
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    await fanout.wait_idle()
    app.dependency_overrides.clear()
