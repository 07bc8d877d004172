"""
Notification job handler.

Delivers a notification to every push endpoint registered for the
recipient. Endpoints the push service reports as gone are deregistered.
"""

import asyncio
import logging
from typing import Any

from jobrelay.db.subscriptions import SubscriptionStore
from jobrelay.errors import PermanentError, TransientError
from jobrelay.notifications.transport import PushTransport
from jobrelay.types.job import JobContext, JobResult
from jobrelay.types.notifications import DeliveryStatus, NotificationPayload

logger = logging.getLogger(__name__)


def build_message(payload: NotificationPayload) -> dict[str, Any]:
    """Shape the message body sent to push endpoints."""
    message: dict[str, Any] = {
        "title": payload.title,
        "body": payload.body,
    }
    if payload.tag:
        message["tag"] = payload.tag
    data = dict(payload.data or {})
    if payload.url:
        data["url"] = payload.url
    if data:
        message["data"] = data
    return message


def make_notify_handler(subscriptions: SubscriptionStore, transport: PushTransport):
    """
    Create the handler for the notify job type.

    Outcome:
    - at least one endpoint accepted the message: success
    - recipient has no endpoints, or all of them are gone: permanent failure
    - otherwise (rate limited, server errors, network): transient failure
    """

    async def handle_notify(payload: NotificationPayload, context: JobContext) -> JobResult:
        targets = list(await subscriptions.for_recipient(payload.recipient))
        if not targets:
            raise PermanentError(
                f"No push subscriptions registered for recipient {payload.recipient}"
            )

        context.raise_if_cancelled()
        message = build_message(payload)
        results = await asyncio.gather(
            *(transport.send(subscription, message) for subscription in targets)
        )

        accepted = [r.subscription_id for r in results if r.status == DeliveryStatus.ACCEPTED]
        gone = [r.subscription_id for r in results if r.status == DeliveryStatus.GONE]
        failed = [r for r in results if r.status == DeliveryStatus.FAILED]

        if gone:
            await subscriptions.remove(gone)
        if accepted:
            await subscriptions.touch(accepted)

        logger.info(
            "Notification delivered",
            extra={
                "job_id": str(context.job_id),
                "recipient": payload.recipient,
                "accepted": len(accepted),
                "gone": len(gone),
                "failed": len(failed),
            },
        )

        if accepted:
            return JobResult.ok(
                {"accepted": len(accepted), "gone": len(gone), "failed": len(failed)}
            )
        if not failed:
            raise PermanentError("All push subscriptions for recipient are gone")
        raise TransientError(failed[0].error or "Push delivery failed")

    return handle_notify
