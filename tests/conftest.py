"""Pytest configuration and fixtures for fedcore tests."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fedcore.actors import ActorCache
from fedcore.config import ServerConfig
from fedcore.dispatcher import ActivityDispatcher
from fedcore.fetcher import RemoteFetcher
from fedcore.ids import IdentifierAllocator
from fedcore.models import ActorRecord, Base, ObjectRecord
from fedcore.notifications import NotificationEmitter
from fedcore.objects import ObjectCache
from fedcore.pagination import CollectionPaginator

LOCAL_DOMAIN = "social.example"
LOCAL_BASE_URL = "https://social.example"


class FakeResponse:
    """Stands in for an aiohttp response used as an async context manager."""

    def __init__(self, status: int, body: Any, delay: float = 0):
        self.status = status
        self._body = body
        self._delay = delay

    async def __aenter__(self) -> "FakeResponse":
        if self._delay:
            await asyncio.sleep(self._delay)
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def json(self, content_type: str | None = None) -> Any:
        if isinstance(self._body, str):
            return json.loads(self._body)
        return self._body

    async def text(self) -> str:
        if isinstance(self._body, str):
            return self._body
        return json.dumps(self._body)


class FakeHttpSession:
    """Serves canned documents by URL; unknown URLs answer 404."""

    def __init__(self):
        self.documents: dict[str, tuple[int, Any]] = {}
        self.gets: list[tuple[str, dict]] = []
        self.posts: list[tuple[str, Any]] = []
        self.post_status = 202
        self.delay = 0.0
        self.closed = False

    def add(self, url: str, body: Any, status: int = 200) -> None:
        self.documents[url] = (status, body)

    def get(self, url: str, headers: dict | None = None, timeout: Any = None) -> FakeResponse:
        self.gets.append((url, headers or {}))
        status, body = self.documents.get(url, (404, {"error": "not found"}))
        return FakeResponse(status, body, self.delay)

    def post(self, url: str, json: Any = None, timeout: Any = None) -> FakeResponse:
        self.posts.append((url, json))
        return FakeResponse(self.post_status, "")

    def fetch_count(self, url: str) -> int:
        return sum(1 for requested, _ in self.gets if requested == url)

    async def close(self) -> None:
        self.closed = True


def actor_document(actor_id: str, username: str = "bob", **overrides: Any) -> dict[str, Any]:
    """Remote Person document as a Mastodon server would serve it."""
    document = {
        "@context": ["https://www.w3.org/ns/activitystreams"],
        "id": actor_id,
        "type": "Person",
        "preferredUsername": username,
        "name": username.title(),
        "summary": f"<p>{username} on the fediverse</p>",
        "inbox": f"{actor_id}/inbox",
        "outbox": f"{actor_id}/outbox",
        "publicKey": {
            "id": f"{actor_id}#main-key",
            "owner": actor_id,
            "publicKeyPem": "-----BEGIN PUBLIC KEY-----\nMIIB\n-----END PUBLIC KEY-----\n",
        },
    }
    document.update(overrides)
    return document


def note_document(object_id: str, author: str, content: str = "<p>Hello</p>", **overrides: Any) -> dict[str, Any]:
    document = {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": object_id,
        "type": "Note",
        "attributedTo": author,
        "content": content,
        "published": "2024-01-15T10:00:00Z",
        "to": ["https://www.w3.org/ns/activitystreams#Public"],
    }
    document.update(overrides)
    return document


@pytest.fixture
def config() -> ServerConfig:
    """Create test configuration."""
    return ServerConfig(
        federation={
            "domain": LOCAL_DOMAIN,
            "base_url": LOCAL_BASE_URL,
            "host": "127.0.0.1",
            "port": 8080,
            "user_kek": "test-key-encryption-key",
        },
        database={"url": "sqlite+aiosqlite:///:memory:"},
    )


@pytest_asyncio.fixture
async def session_maker():
    """Create in-memory database session maker for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """File-backed database, one connection per session, for concurrency tests."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fedcore.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_maker) -> AsyncSession:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session


@pytest.fixture
def http() -> FakeHttpSession:
    return FakeHttpSession()


@pytest.fixture
def fetcher(http) -> RemoteFetcher:
    return RemoteFetcher(user_agent="fedcore-tests", timeout_seconds=5, http_session=http)


@pytest.fixture
def allocator(session_maker) -> IdentifierAllocator:
    return IdentifierAllocator(session_maker)


@pytest.fixture
def actor_cache(fetcher, allocator, config) -> ActorCache:
    return ActorCache(
        fetcher=fetcher,
        allocator=allocator,
        base_url=config.federation.base_url,
        domain=config.federation.domain,
        user_kek=config.federation.user_kek,
    )


@pytest.fixture
def object_cache(fetcher, allocator, config) -> ObjectCache:
    return ObjectCache(fetcher=fetcher, allocator=allocator, base_url=config.federation.base_url)


@pytest.fixture
def emitter() -> NotificationEmitter:
    return NotificationEmitter()


@pytest.fixture
def dispatcher(actor_cache, object_cache, emitter) -> ActivityDispatcher:
    return ActivityDispatcher(actor_cache, object_cache, emitter)


@pytest.fixture
def paginator(actor_cache, object_cache, fetcher, config) -> CollectionPaginator:
    return CollectionPaginator(actor_cache, object_cache, fetcher, config.federation)


@pytest.fixture
def make_actor(session):
    """Insert an actor row directly; local actors get placeholder key material."""
    counter = {"value": 0}

    async def _make(actor_id: str, username: str, local: bool = False) -> ActorRecord:
        counter["value"] += 1
        actor = ActorRecord(
            actor_id=actor_id,
            type="Person",
            mastodon_id=str(1000 + counter["value"]),
            properties={
                "preferredUsername": username,
                "name": username.title(),
                "followers": f"{actor_id}/followers",
                "outbox": f"{actor_id}/outbox",
            },
            private_key=b"wrapped" if local else None,
            created_at=datetime.now(timezone.utc),
        )
        session.add(actor)
        await session.commit()
        return actor

    return _make


@pytest.fixture
def make_object(session):
    """Insert an object row directly."""
    counter = {"value": 0}

    async def _make(object_id: str, author: ActorRecord, local: bool = False, **properties: Any) -> ObjectRecord:
        counter["value"] += 1
        obj = ObjectRecord(
            object_id=object_id,
            type=properties.pop("type", "Note"),
            mastodon_id=str(5000 + counter["value"]),
            original_actor_id=author.actor_id,
            delivering_actor_id=author.actor_id,
            in_reply_to=properties.pop("in_reply_to", None),
            local=local,
            properties={"content": "<p>Hello</p>", **properties},
            created_at=datetime.now(timezone.utc),
        )
        session.add(obj)
        await session.commit()
        return obj

    return _make


@pytest.fixture
def actor_doc():
    """Builder for remote actor documents."""
    return actor_document


@pytest.fixture
def note_doc():
    """Builder for Note documents."""
    return note_document
