"""Shared test fixtures: async SQLite engine, test client, provider and counter fakes."""

import os

# Set env vars BEFORE importing app modules (config reads at import time)
os.environ.setdefault("BILLING_CORE_AUTH_JWT_SECRET", "test-jwt-secret-for-tests")
os.environ.setdefault("BILLING_CORE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["BILLING_CORE_REDIS_URL"] = ""
os.environ["BILLING_CORE_CRON_SECRET"] = "test-cron-secret"
os.environ["BILLING_CORE_LEMONSQUEEZY_TEST_MODE"] = "true"
os.environ["BILLING_CORE_LEMONSQUEEZY_API_KEY_TEST"] = "test-api-key"
os.environ["BILLING_CORE_LEMONSQUEEZY_STORE_ID_TEST"] = "1"
os.environ["BILLING_CORE_LEMONSQUEEZY_WEBHOOK_SECRET_TEST"] = "test-webhook-secret"
os.environ["BILLING_CORE_LEMONSQUEEZY_SUBSCRIPTION_VARIANT_ID"] = "100"
os.environ["BILLING_CORE_LEMONSQUEEZY_METERED_VARIANT_ID"] = "200"
os.environ["BILLING_CORE_TESTING"] = "1"  # Bypass rate limiter middleware in tests

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing_core.database import Base, get_db, get_session_factory  # noqa: E402
from billing_core.dependencies import get_counter_store, get_provider_client  # noqa: E402
from billing_core.main import app  # noqa: E402
from billing_core.middleware.rate_limiter import _buckets as _middleware_buckets  # noqa: E402
from billing_core.services.counter_store import MemoryCounterStore  # noqa: E402
from tests.factories import FakeExecutor, FakeProviderClient  # noqa: E402

# Async SQLite engine for tests (in-memory, one shared connection)
test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def clear_rate_limits():
    _middleware_buckets.clear()
    yield
    _middleware_buckets.clear()


async def _override_get_db():
    async with TestSession() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = _override_get_db
app.dependency_overrides[get_session_factory] = lambda: TestSession


@pytest.fixture(autouse=True)
def provider():
    """Fake billing provider, injected wherever the app asks for a client."""
    fake = FakeProviderClient()
    app.dependency_overrides[get_provider_client] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_provider_client, None)


@pytest.fixture(autouse=True)
def counter_store():
    store = MemoryCounterStore()
    app.dependency_overrides[get_counter_store] = lambda: store
    yield store
    app.dependency_overrides.pop(get_counter_store, None)


@pytest.fixture
def executor():
    """Register a fake paid-work executor (the real one is an external collaborator)."""
    from billing_core.api.work import get_work_executor

    fake = FakeExecutor()
    app.dependency_overrides[get_work_executor] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_work_executor, None)


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def db():
    async with TestSession() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestSession
