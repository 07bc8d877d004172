"""
Push notification delivery.
"""

from jobrelay.notifications.handler import build_message, make_notify_handler
from jobrelay.notifications.transport import (
    WebPushTransport,
    PushTransport,
    classify_response,
)

__all__ = [
    "build_message",
    "make_notify_handler",
    "WebPushTransport",
    "PushTransport",
    "classify_response",
]
