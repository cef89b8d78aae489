"""Pytest configuration and fixtures."""

import asyncio
import os
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment before importing app
os.environ["TESTING"] = "1"

from splitledger.auth.tokens import create_access_token
from splitledger.db.base import Base
from splitledger.db.session import TenantSessionFactory
from splitledger.main import app
from splitledger.webhooks.config import WebhookSettings
from splitledger.webhooks.dispatcher import WebhookDispatcher
from splitledger.webhooks.queue import DeliveryJob, Reservation
from splitledger.webhooks.store import SubscriptionStore
from splitledger.webhooks.transport import HttpxTransport
from splitledger.webhooks.worker import WebhookWorker

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TENANT_ID = "acme"
TENANT_SCHEMA = "tenant_acme"
WEBHOOK_URL = "https://hooks.example.com/ledger"


def as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; they are stored as UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class InMemoryDeliveryQueue:
    """``JobQueue`` double with the same reserve/ack/schedule semantics."""

    def __init__(self):
        self.ready: list[str] = []
        self.processing: list[str] = []
        self.delayed: dict[str, float] = {}
        self.idempotency_keys: set[str] = set()
        # Number of enqueues that succeed before ConnectionError; None = never fail
        self.enqueue_budget: int | None = None

    async def enqueue(self, job: DeliveryJob) -> None:
        if self.enqueue_budget is not None:
            if self.enqueue_budget <= 0:
                raise ConnectionError("Connection refused")
            self.enqueue_budget -= 1
        self.ready.append(job.to_json())

    async def reserve(self) -> Reservation | None:
        if not self.ready:
            # Stand-in for the blocking wait on an empty list
            await asyncio.sleep(0.01)
            return None
        raw = self.ready.pop(0)
        self.processing.append(raw)
        return Reservation(job=DeliveryJob.from_json(raw), raw=raw)

    async def ack(self, reservation: Reservation) -> None:
        self.processing.remove(reservation.raw)

    async def schedule(self, job: DeliveryJob, run_at: datetime) -> None:
        self.delayed[job.to_json()] = run_at.timestamp()

    async def promote_due(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        due = [raw for raw, run_at in self.delayed.items() if run_at <= now]
        for raw in due:
            del self.delayed[raw]
            self.ready.append(raw)
        return len(due)

    async def reclaim_expired(self, now: float | None = None) -> int:
        return 0

    async def recover_orphans(self) -> int:
        recovered = len(self.processing)
        self.ready.extend(self.processing)
        self.processing.clear()
        return recovered

    async def claim_idempotency_key(self, tenant_schema: str, key: str, ttl_seconds: int) -> bool:
        full_key = f"{tenant_schema}:{key}"
        if full_key in self.idempotency_keys:
            return False
        self.idempotency_keys.add(full_key)
        return True

    async def release_idempotency_key(self, tenant_schema: str, key: str) -> None:
        self.idempotency_keys.discard(f"{tenant_schema}:{key}")

    async def stats(self) -> dict[str, int]:
        return {
            "ready": len(self.ready),
            "delayed": len(self.delayed),
            "in_flight": len(self.processing),
        }

    def delayed_jobs(self) -> list[tuple[DeliveryJob, float]]:
        return [(DeliveryJob.from_json(raw), run_at) for raw, run_at in self.delayed.items()]


class FakeEndpoint:
    """Scripted receiver behind ``httpx.MockTransport``.

    Each entry of ``script`` is a status code or an exception to raise;
    once the script runs out every request gets 200.
    """

    def __init__(self):
        self.script: list[int | Exception] = []
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.script.pop(0) if self.script else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=f"status {outcome}")


class FakeClock:
    """Controllable UTC clock for the worker."""

    def __init__(self):
        self.now = datetime(2026, 1, 15, 10, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@asynccontextmanager
async def sqlite_sessions() -> AsyncIterator[TenantSessionFactory]:
    """Fresh in-memory database, for tests that cannot use function fixtures."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield TenantSessionFactory(engine, schema_isolation=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db_engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def sessions(db_engine) -> TenantSessionFactory:
    """Tenant session factory on the single-schema SQLite database."""
    return TenantSessionFactory(db_engine, schema_isolation=False)


@pytest.fixture
def queue() -> InMemoryDeliveryQueue:
    return InMemoryDeliveryQueue()


@pytest.fixture
def endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest_asyncio.fixture
async def transport(endpoint: FakeEndpoint) -> AsyncGenerator[HttpxTransport, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    yield HttpxTransport(client)
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def webhook_settings() -> WebhookSettings:
    return WebhookSettings()


@pytest.fixture
def dispatcher(sessions, queue, webhook_settings) -> WebhookDispatcher:
    return WebhookDispatcher(sessions, queue, webhook_settings)


@pytest.fixture
def worker(sessions, queue, transport, webhook_settings, clock) -> WebhookWorker:
    return WebhookWorker(sessions, queue, transport, webhook_settings, clock=clock)


@pytest.fixture
def create_webhook(sessions) -> Callable:
    """Insert a subscription directly through the store."""

    async def _create(
        events: list[str] | None = None,
        url: str = WEBHOOK_URL,
        secret: str = "whsec_test_0123456789abcdef",
        is_active: bool = True,
    ):
        async with sessions.session(TENANT_SCHEMA) as session:
            store = SubscriptionStore(session)
            webhook = await store.create(
                url=url,
                secret=secret,
                events=events or ["invoice.paid"],
                created_by=uuid.uuid4(),
            )
            if not is_active:
                await store.deactivate(webhook)
            await session.commit()
            return webhook

    return _create


@pytest.fixture
def operator_headers() -> dict[str, str]:
    token = create_access_token(str(uuid.uuid4()), TENANT_ID, "owner")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(
    sessions, queue, transport, webhook_settings
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with in-memory collaborators on app.state."""
    app.state.sessions = sessions
    app.state.webhook_queue = queue
    app.state.webhook_transport = transport
    app.state.webhook_settings = webhook_settings
    app.state.webhook_dispatcher = WebhookDispatcher(sessions, queue, webhook_settings)
    app.state.webhook_worker = None

    asgi_transport = ASGITransport(app=app)
    async with AsyncClient(transport=asgi_transport, base_url="http://test") as ac:
        yield ac
