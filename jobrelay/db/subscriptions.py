"""
Push subscription storage.
Keeps the delivery endpoints the notification handler resolves per recipient.
"""

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.clock import utcnow
from jobrelay.db.models import PushSubscription
from jobrelay.errors import StoreUnavailableError

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Registered push endpoints, keyed by recipient."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailableError(str(e)) from e

    async def register(
        self,
        recipient: str,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: str | None = None,
    ) -> PushSubscription:
        """
        Register an endpoint for a recipient.

        Re-registering a known endpoint moves it to the new recipient and
        refreshes its keys.
        """
        async with self._session() as session:
            existing = await session.scalar(
                select(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            if existing is not None:
                existing.recipient = recipient
                existing.p256dh = p256dh
                existing.auth = auth
                existing.user_agent = user_agent
                subscription = existing
            else:
                subscription = PushSubscription(
                    recipient=recipient,
                    endpoint=endpoint,
                    p256dh=p256dh,
                    auth=auth,
                    user_agent=user_agent,
                    created_at=utcnow(),
                )
                session.add(subscription)

        logger.info(
            "Registered push subscription",
            extra={"subscription_id": str(subscription.id), "recipient": recipient},
        )
        return subscription

    async def for_recipient(self, recipient: str) -> Sequence[PushSubscription]:
        async with self._session() as session:
            rows = await session.scalars(
                select(PushSubscription)
                .where(PushSubscription.recipient == recipient)
                .order_by(PushSubscription.created_at.asc())
            )
            return rows.all()

    async def remove(self, subscription_ids: Iterable[UUID]) -> int:
        """Deregister endpoints. Returns the number removed."""
        ids = list(subscription_ids)
        if not ids:
            return 0
        async with self._session() as session:
            result = await session.execute(
                delete(PushSubscription).where(PushSubscription.id.in_(ids))
            )
        if result.rowcount:
            logger.info(
                "Removed push subscriptions",
                extra={"count": result.rowcount},
            )
        return result.rowcount

    async def touch(self, subscription_ids: Iterable[UUID]) -> None:
        """Record a successful delivery on the given endpoints."""
        ids = list(subscription_ids)
        if not ids:
            return
        async with self._session() as session:
            await session.execute(
                update(PushSubscription)
                .where(PushSubscription.id.in_(ids))
                .values(last_used_at=utcnow())
            )
