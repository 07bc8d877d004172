"""
Job engine.

Wires the store, handler registry, status channel, worker pool, scheduler,
stats aggregator and admin service together. The API process and the
standalone worker process both run one engine.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobrelay.admin.service import AdminService
from jobrelay.channel import StatusChannel
from jobrelay.config import Settings, get_settings
from jobrelay.constants import SPAN_ENQUEUE_JOB
from jobrelay.db.connection import create_engine, create_schema, create_session_factory
from jobrelay.db.store import JobStore
from jobrelay.db.subscriptions import SubscriptionStore
from jobrelay.notifications.transport import PushTransport, WebPushTransport
from jobrelay.observability.tracing import get_tracer, instrument_sqlalchemy
from jobrelay.scheduler.main import Scheduler
from jobrelay.stats.aggregator import StatsAggregator
from jobrelay.worker.handlers import HandlerRegistry, create_default_registry
from jobrelay.worker.pool import WorkerPool

logger = logging.getLogger(__name__)


class JobEngine:
    """
    One job queue engine: everything needed to accept, run and observe jobs.

    The registry is built once here and handed by reference to the store,
    the scheduler and the worker pool.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        registry: HandlerRegistry | None = None,
        transport: PushTransport | None = None,
        worker_id: str | None = None,
        db_engine: AsyncEngine | None = None,
    ):
        """
        Args:
            session_factory: Factory for database sessions.
            settings: Application settings.
            registry: Handlers by job type. Defaults to notify, echo and sleep.
            transport: Push transport for the notify handler.
            worker_id: Lease identifier of this process's worker pool.
            db_engine: Database engine owned by this object, disposed on close.
        """
        self.settings = settings or get_settings()
        self._db_engine = db_engine
        self.transport = transport or self._default_transport(self.settings)

        self.channel = StatusChannel()
        self.subscriptions = SubscriptionStore(session_factory)
        self.registry = registry or create_default_registry(
            self.subscriptions, self.transport
        )
        self.store = JobStore(session_factory, self.registry, self.settings, self.channel)
        self.pool = WorkerPool(
            self.store,
            self.registry,
            self.settings,
            worker_id=worker_id,
            on_slot_free=self.wake,
        )
        self.scheduler = Scheduler(self.store, self.pool, self.registry, self.settings)
        self.aggregator = StatsAggregator(self.store, self.pool)
        self.admin = AdminService(
            self.store,
            self.aggregator,
            self.channel,
            self.settings,
            enqueue=self.enqueue,
        )
        self._started = False

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> "JobEngine":
        """Build an engine with its own database connection from settings."""
        settings = settings or get_settings()
        db_engine = create_engine(settings.database_url, settings)
        instrument_sqlalchemy(db_engine.sync_engine)
        if settings.database_auto_create and not settings.build_phase:
            await create_schema(db_engine)
        return cls(
            create_session_factory(db_engine),
            settings=settings,
            db_engine=db_engine,
            **kwargs,
        )

    @staticmethod
    def _default_transport(settings: Settings) -> WebPushTransport:
        transport = WebPushTransport(
            vapid_private_key=settings.vapid_private_key,
            vapid_subject=settings.vapid_subject,
            timeout_seconds=settings.push_request_timeout_seconds,
            ttl_seconds=settings.push_ttl_seconds,
        )
        if not transport.configured:
            logger.warning("VAPID keys not configured, web push notifications disabled")
        return transport

    @property
    def started(self) -> bool:
        return self._started

    def wake(self) -> None:
        """Wake the scheduler; called on enqueue and when a slot frees up."""
        scheduler = getattr(self, "scheduler", None)
        if scheduler is not None:
            scheduler.wake()

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        **options: Any,
    ) -> UUID:
        """
        Enqueue a job and wake the scheduler.

        Raises:
            ValidationError: Unknown type or invalid payload/options.
            StoreUnavailableError: The store could not be reached.
        """
        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", job_type)
            job_id = await self.store.enqueue(job_type, payload, **options)
            span.set_attribute("job_id", str(job_id))
        self.wake()
        return job_id

    async def start(self) -> None:
        """Start the worker pool and the scheduler loop."""
        if self._started:
            return
        await self.pool.start()
        await self.scheduler.start()
        self._started = True
        logger.info(
            "Job engine started",
            extra={
                "worker_id": self.pool.worker_id,
                "job_types": self.registry.types(),
            },
        )

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop scheduling, drain the pool within the grace period."""
        if self._started:
            await self.scheduler.stop()
            await self.pool.shutdown(grace_seconds)
            self._started = False
            logger.info("Job engine stopped")

    async def close(self) -> None:
        """Stop and release owned resources."""
        await self.stop()
        if self._db_engine is not None:
            await self._db_engine.dispose()
            self._db_engine = None

    async def __aenter__(self) -> "JobEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
