"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobrelay.types.api import (
    CreateJobRequest,
    CreateJobResponse,
    DiagnosticJobRequest,
    DiagnosticJobResponse,
    EnqueueOptions,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatusResponse,
    RegisterSubscriptionRequest,
    SubscriptionResponse,
)
from jobrelay.types.events import (
    JobEvent,
    WebSocketMessage,
)
from jobrelay.types.job import (
    JobContext,
    JobResult,
    LeaseInfo,
)
from jobrelay.types.notifications import (
    DeliveryResult,
    DeliveryStatus,
    NotificationPayload,
)
from jobrelay.types.stats import (
    ActivityEntry,
    JobTypeStat,
    QueueStats,
    StatusCounts,
    WorkerStats,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "CreateJobResponse",
    "EnqueueOptions",
    "JobResponse",
    "JobListResponse",
    "JobStatusResponse",
    "DiagnosticJobRequest",
    "DiagnosticJobResponse",
    "RegisterSubscriptionRequest",
    "SubscriptionResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobResult",
    "JobContext",
    "LeaseInfo",
    # Notification types
    "NotificationPayload",
    "DeliveryStatus",
    "DeliveryResult",
    # Stats types
    "StatusCounts",
    "JobTypeStat",
    "WorkerStats",
    "ActivityEntry",
    "QueueStats",
    # Event types
    "JobEvent",
    "WebSocketMessage",
]
