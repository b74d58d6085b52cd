"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- An in-memory Redis stand-in patched over get_redis
- The HTTP test client with the Celery enqueue captured
- Webhook config factories and signed delivery helpers
"""
import fnmatch
import json
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.dependencies.webhooks import get_event_enqueuer
from app.core.config import settings
from app.db.database import Base, get_db
from app.db.models.webhook_config import WebhookConfig
from app.domain.webhooks.platforms import Platform
from app.domain.webhooks.security_gate import SecurityGate, SecurityPolicy
from app.domain.webhooks.signatures import sign_payload
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-api-key"
TEST_SECRET = "test-webhook-secret"
TEST_VERIFY_TOKEN = "test-verify-token"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    # pysqlite SAVEPOINT recipe: let SQLAlchemy emit BEGIN itself so
    # begin_nested() savepoints nest inside the outer transaction
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def enqueued() -> list[int]:
    """Event ids handed to the worker during a test"""
    return []


@pytest.fixture
def enqueue(enqueued: list[int]):
    """Async enqueuer that records into `enqueued`"""
    async def _enqueue(event_id: int) -> None:
        enqueued.append(event_id)
    return _enqueue


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, enqueue):
    """Create test client with database and queue overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_enqueuer] = lambda: enqueue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Redis
# ============================================================================

class FakePipeline:
    """Queues commands and runs them in order on execute(), like MULTI/EXEC"""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple, dict]] = []

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> "FakePipeline":
        self._commands.append((name, args, kwargs))
        return self

    def incr(self, key: str) -> "FakePipeline":
        return self._queue("incr", key)

    def expire(self, key: str, ttl: int, nx: bool = False) -> "FakePipeline":
        return self._queue("expire", key, ttl, nx=nx)

    def ttl(self, key: str) -> "FakePipeline":
        return self._queue("ttl", key)

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> "FakePipeline":
        return self._queue("set", key, value, nx=nx, ex=ex)

    def get(self, key: str) -> "FakePipeline":
        return self._queue("get", key)

    async def execute(self) -> list[Any]:
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    """In-memory Redis stand-in with the same interface and TTL tracking. Time never passes."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if missing) and EX (expiry in seconds)"""
        if nx and key in self._store:
            return None
        self._store[key] = str(value)
        if ex is not None:
            self._ttls[key] = ex
        else:
            self._ttls.pop(key, None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._store[key] = str(value)
        self._ttls[key] = ttl
        return True

    async def getdel(self, key: str) -> str | None:
        self._ttls.pop(key, None)
        return self._store.pop(key, None)

    async def incr(self, key: str) -> int:
        """Atomic INCR, starts at 1 when missing, keeps the TTL"""
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def decr(self, key: str) -> int:
        current = self._store.get(key)
        new_val = int(current) - 1 if current is not None else -1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int, nx: bool = False) -> bool:
        """EXPIRE, with NX only when the key has no TTL yet"""
        if key not in self._store:
            return False
        if nx and key in self._ttls:
            return False
        self._ttls[key] = ttl
        return True

    async def ttl(self, key: str) -> int:
        if key not in self._store:
            return -2
        return self._ttls.get(key, -1)

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self._store)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self._store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()

    # Test helpers

    def keys_matching(self, pattern: str) -> list[str]:
        return [key for key in self._store if fnmatch.fnmatchcase(key, pattern)]


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis in every module that imports it."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.api.dependencies.webhooks.get_redis", _get_fake_redis), \
         patch("app.domain.services.alert_service.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def security_policy() -> SecurityPolicy:
    return SecurityPolicy.from_settings()


@pytest.fixture
def security_gate(fake_redis: FakeRedis, security_policy: SecurityPolicy) -> SecurityGate:
    return SecurityGate(fake_redis, security_policy)


@pytest.fixture
def admin_headers():
    """X-Admin-API-Key header, with the key configured for the test"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def config_factory(db_session: AsyncSession):
    """Factory for creating webhook configs"""
    async def _create_config(
        platform: Platform = Platform.FACEBOOK,
        social_account_id: int = 1,
        secret: str = TEST_SECRET,
        events: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> WebhookConfig:
        config = WebhookConfig(
            social_account_id=social_account_id,
            platform=platform,
            secret=secret,
            events=list(events or []),
            metadata_=metadata if metadata is not None else {"verify_token": TEST_VERIFY_TOKEN},
            is_active=is_active,
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _create_config


def signed_request(
    platform: Platform,
    payload: Any,
    secret: str = TEST_SECRET,
    extra_headers: dict[str, str] | None = None,
) -> tuple[bytes, dict[str, str]]:
    """(body, headers) for a delivery signed the way the platform signs it"""
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    header, signature = sign_payload(platform, body, secret)
    headers = {"Content-Type": "application/json", header: signature}
    headers.update(extra_headers or {})
    return body, headers


@pytest.fixture
def facebook_feed_payload() -> dict:
    return {
        "object": "page",
        "entry": [{
            "id": "page-1",
            "time": 1700000000,
            "changes": [{
                "field": "feed",
                "value": {
                    "item": "status",
                    "verb": "add",
                    "post_id": "page-1_post-1",
                    "message": "hello",
                    "from": {"id": "user-1", "name": "Alice"},
                },
            }],
        }],
    }
