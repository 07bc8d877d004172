"""
Push delivery transport.

Sends one notification message to one registered push endpoint and
classifies the response: accepted, gone (the endpoint should be
deregistered) or failed (worth retrying later).
"""

import asyncio
import json
import logging
from typing import Any, Protocol

from pywebpush import WebPushException, webpush
from requests import RequestException

from jobrelay.db.models import PushSubscription
from jobrelay.errors import PermanentError
from jobrelay.types.notifications import DeliveryResult, DeliveryStatus

logger = logging.getLogger(__name__)

# Push services answer these when a subscription no longer exists
GONE_STATUS_CODES = frozenset({400, 404, 410})


class PushTransport(Protocol):
    """Delivers a message to a single push endpoint."""

    async def send(
        self,
        subscription: PushSubscription,
        message: dict[str, Any],
    ) -> DeliveryResult: ...


def classify_response(subscription: PushSubscription, status_code: int) -> DeliveryResult:
    """Map a push service HTTP status to a delivery outcome."""
    if 200 <= status_code < 300:
        return DeliveryResult(subscription.id, DeliveryStatus.ACCEPTED)
    if status_code in GONE_STATUS_CODES:
        return DeliveryResult(
            subscription.id,
            DeliveryStatus.GONE,
            error=f"Subscription gone: HTTP {status_code}",
        )
    if status_code == 413:
        error = "Payload too large"
    elif status_code == 429:
        error = "Rate limited"
    elif status_code >= 500:
        error = f"Server error: HTTP {status_code}"
    else:
        error = f"Client error: HTTP {status_code}"
    return DeliveryResult(subscription.id, DeliveryStatus.FAILED, error=error)


class WebPushTransport:
    """
    Delivers notification messages with the Web Push protocol.

    Each message is encrypted (aes128gcm) with the subscription's p256dh
    and auth keys and signed with the VAPID private key. pywebpush is
    synchronous, so every request runs in a worker thread.
    """

    def __init__(
        self,
        vapid_private_key: str | None,
        vapid_subject: str,
        timeout_seconds: float = 10.0,
        ttl_seconds: int = 86400,
        urgency: str = "normal",
    ):
        self._vapid_private_key = vapid_private_key
        self._vapid_subject = vapid_subject
        self._timeout_seconds = timeout_seconds
        self._ttl_seconds = ttl_seconds
        self._urgency = urgency

    @property
    def configured(self) -> bool:
        return bool(self._vapid_private_key)

    async def send(
        self,
        subscription: PushSubscription,
        message: dict[str, Any],
    ) -> DeliveryResult:
        """
        Raises:
            PermanentError: No VAPID key is configured.
        """
        if not self.configured:
            raise PermanentError("VAPID keys not configured, web push delivery disabled")

        subscription_info = {
            "endpoint": subscription.endpoint,
            "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
        }
        data = json.dumps({"notification": message})
        try:
            await asyncio.to_thread(self._post, subscription_info, data)
        except WebPushException as e:
            if e.response is not None:
                return classify_response(subscription, e.response.status_code)
            return self._unreachable(subscription, e)
        except RequestException as e:
            return self._unreachable(subscription, e)
        except ValueError as e:
            # Keys that cannot be decoded will never work
            logger.warning(
                "Push subscription has invalid keys",
                extra={"subscription_id": str(subscription.id), "error": str(e)},
            )
            return DeliveryResult(
                subscription.id,
                DeliveryStatus.GONE,
                error="Subscription keys are invalid",
            )
        return DeliveryResult(subscription.id, DeliveryStatus.ACCEPTED)

    def _post(self, subscription_info: dict[str, Any], data: str) -> None:
        webpush(
            subscription_info=subscription_info,
            data=data,
            vapid_private_key=self._vapid_private_key,
            # pywebpush adds aud and exp to the claims it is given
            vapid_claims={"sub": self._vapid_subject},
            ttl=self._ttl_seconds,
            timeout=self._timeout_seconds,
            headers={"Urgency": self._urgency},
        )

    @staticmethod
    def _unreachable(subscription: PushSubscription, error: Exception) -> DeliveryResult:
        logger.warning(
            "Push endpoint unreachable",
            extra={"subscription_id": str(subscription.id), "error": str(error)},
        )
        return DeliveryResult(
            subscription.id,
            DeliveryStatus.FAILED,
            error=f"Delivery request failed: {error.__class__.__name__}",
        )
