"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- A controllable clock and a recording work scheduler
- A runtime with one Stripe-style provider ("acme")
- An HTTP client bound to the FastAPI app
"""
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import hashlib
import hmac
import json

import pytest
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from webhook_hub.db.database import Base, get_db
from webhook_hub.db import models  # noqa: F401
from webhook_hub.domain.provider_config import OutgoingEndpoint, ProviderConfig
from webhook_hub.runtime import Runtime, get_runtime


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START_TIME = 1_700_000_000.0
ACME_SECRET = "s3cr3t"
ACME_TOKEN = "tok_acme"


class FakeClock:
    """Clock whose time only moves when a test says so"""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingScheduler:
    """WorkScheduler that remembers what it was asked to schedule"""

    def __init__(self):
        self.actions: list[tuple[int, float]] = []
        self.deliveries: list[tuple[int, float]] = []

    def schedule_action(self, record_id: int, delay_seconds: float = 0) -> None:
        self.actions.append((record_id, delay_seconds))

    def schedule_delivery(self, event_id: int, delay_seconds: float = 0) -> None:
        self.deliveries.append((event_id, delay_seconds))


def stripe_signature(secret: str, body: bytes, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def stripe_headers(secret: str, body: bytes, timestamp: int) -> dict[str, str]:
    return {"Stripe-Signature": f"t={timestamp},v1={stripe_signature(secret, body, timestamp)}"}


def event_body(event_id: str = "evt_1", event_type: str = "x", **extra) -> bytes:
    return json.dumps({"id": event_id, "type": event_type, **extra}).encode()


FACTORY_CALLS: list[int] = []


def notify_runtime() -> Runtime:
    """RUNTIME_FACTORY target: "acme" with a "notify" action recording event ids"""
    rt = Runtime(scheduler=RecordingScheduler(), clock=FakeClock())
    rt.register_provider(ProviderConfig(name="acme", token=ACME_TOKEN, signing_secret=ACME_SECRET, verifier="stripe"))
    rt.action_registry.register("acme", "x", "notify", handler=lambda event: FACTORY_CALLS.append(event.id))
    return rt


def bare_runtime() -> Runtime:
    """RUNTIME_FACTORY target without a scheduler"""
    return Runtime()


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    """Session factory for tests that simulate several workers"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def runtime(clock: FakeClock, scheduler: RecordingScheduler) -> Runtime:
    """Runtime with the "acme" provider (Stripe signature scheme)"""
    rt = Runtime(scheduler=scheduler, clock=clock)
    rt.register_provider(
        ProviderConfig(
            name="acme",
            token=ACME_TOKEN,
            signing_secret=ACME_SECRET,
            verifier="stripe",
            rate_limit_requests=100,
            rate_limit_period=60,
        )
    )
    rt.register_endpoint(
        OutgoingEndpoint(
            name="partner",
            base_url="https://partner.example.com/hooks",
            signing_secret="outgoing-secret",
            retry_delays=[10, 20],
            max_attempts=3,
            circuit_failure_threshold=2,
            circuit_cooldown_seconds=60,
        )
    )
    return rt


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, runtime: Runtime):
    """Create test client with database and runtime overrides"""
    from httpx import AsyncClient, ASGITransport
    from webhook_hub.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = lambda: runtime

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
