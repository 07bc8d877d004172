"""
Push notification payload and delivery types.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationPayload(BaseModel):
    """Payload schema of the notify job type."""

    recipient: str = Field(..., min_length=1, description="Recipient user id")
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(default="", max_length=4000)
    tag: str | None = None
    url: str | None = None
    data: dict[str, Any] | None = None


class DeliveryStatus(StrEnum):
    """Outcome of a single endpoint delivery."""

    ACCEPTED = "accepted"
    GONE = "gone"
    FAILED = "failed"


@dataclass
class DeliveryResult:
    """Result of delivering one message to one push endpoint."""

    subscription_id: UUID
    status: DeliveryStatus
    error: str | None = None
