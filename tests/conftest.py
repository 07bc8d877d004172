"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobrelay.api.main import create_app
from jobrelay.channel import StatusChannel
from jobrelay.config import Settings
from jobrelay.constants import JobStatus
from jobrelay.db.connection import create_engine, create_session_factory
from jobrelay.db.models import Base, Job, PushSubscription
from jobrelay.db.store import JobStore
from jobrelay.db.subscriptions import SubscriptionStore
from jobrelay.engine import JobEngine
from jobrelay.types.notifications import DeliveryResult, DeliveryStatus
from jobrelay.worker.handlers import HandlerRegistry, create_default_registry

# Optional override, e.g. a PostgreSQL test database. Defaults to a
# throwaway SQLite file per test.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


class FakePushTransport:
    """Push transport that records deliveries instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.responses: dict[str, DeliveryStatus] = {}

    async def send(
        self,
        subscription: PushSubscription,
        message: dict[str, Any],
    ) -> DeliveryResult:
        self.sent.append((subscription.endpoint, message))
        status = self.responses.get(subscription.endpoint, DeliveryStatus.ACCEPTED)
        error = None if status == DeliveryStatus.ACCEPTED else f"simulated {status}"
        return DeliveryResult(subscription.id, status, error=error)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobrelay.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with short intervals."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        worker_concurrency=4,
        worker_lease_duration_seconds=5,
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.1,
        worker_shutdown_grace_seconds=2,
        reaper_interval_seconds=0.2,
        default_job_timeout_seconds=5,
        retry_base_seconds=0.01,
        retry_cap_seconds=0.05,
        retry_jitter=0.0,
        store_retry_base_seconds=0.01,
        store_retry_cap_seconds=0.05,
        store_retry_max_tries=3,
        build_phase=False,
        otel_enabled=False,
    )


@pytest_asyncio.fixture
async def async_engine(database_url: str, test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    engine = create_engine(database_url, test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
def transport() -> FakePushTransport:
    return FakePushTransport()


@pytest.fixture
def subscriptions(session_factory: async_sessionmaker[AsyncSession]) -> SubscriptionStore:
    return SubscriptionStore(session_factory)


@pytest.fixture
def registry(subscriptions: SubscriptionStore, transport: FakePushTransport) -> HandlerRegistry:
    """Default handlers (notify, echo, sleep) wired to the fake transport."""
    return create_default_registry(subscriptions, transport)


@pytest.fixture
def channel() -> StatusChannel:
    return StatusChannel()


@pytest.fixture
def store(
    session_factory: async_sessionmaker[AsyncSession],
    registry: HandlerRegistry,
    test_settings: Settings,
    channel: StatusChannel,
) -> JobStore:
    """Create a job store instance."""
    return JobStore(session_factory, registry, test_settings, channel)


@pytest_asyncio.fixture
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    registry: HandlerRegistry,
    test_settings: Settings,
    transport: FakePushTransport,
) -> AsyncGenerator[JobEngine]:
    """A job engine that is built but not started."""
    job_engine = JobEngine(
        session_factory,
        settings=test_settings,
        registry=registry,
        transport=transport,
        worker_id="test-worker",
    )

    yield job_engine

    await job_engine.close()


@pytest_asyncio.fixture
async def app(engine: JobEngine) -> FastAPI:
    """Create a FastAPI app around a running engine."""
    await engine.start()
    return create_app(engine)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


WaitForJob = Callable[..., Awaitable[Job]]


@pytest.fixture
def wait_for_job(session_factory: async_sessionmaker[AsyncSession]) -> WaitForJob:
    """Poll a job until it reaches one of the given statuses."""

    async def _wait(
        job_id: UUID | str,
        *statuses: JobStatus,
        timeout: float = 5.0,
    ) -> Job:
        job_id = UUID(str(job_id))
        wanted = set(statuses) or {JobStatus.COMPLETED}
        deadline = asyncio.get_running_loop().time() + timeout
        job: Job | None = None
        while asyncio.get_running_loop().time() < deadline:
            async with session_factory() as session:
                job = await session.get(Job, job_id)
            if job is not None and job.status in wanted:
                return job
            await asyncio.sleep(0.02)
        current = job.status if job is not None else None
        raise AssertionError(f"Job {job_id} did not reach {wanted}, last status {current}")

    return _wait
