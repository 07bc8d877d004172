"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (lease acquired)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> PENDING (retry, or lease expired)
    - PROCESSING -> FAILED (permanent failure or attempts exhausted)
    - PENDING -> CANCELLED (immediate)
    - PROCESSING -> CANCELLED (advisory, acknowledged by the worker)
    - FAILED -> PENDING (operator requeue)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.PENDING,
            JobStatus.CANCELLED,
        }
    ),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether the state machine allows moving from current to target."""
    return target in ALLOWED_TRANSITIONS[current]


# Default values
DEFAULT_MAX_ATTEMPTS = 3
MAX_ALLOWED_ATTEMPTS = 25
MAX_RECENT_ACTIVITY = 100
MAX_JOB_LOGS = 500
MAX_TAGS = 20


class LogLevel(StrEnum):
    """Severity of a job log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# API constants
API_V1_PREFIX = "/v1"

# Built-in job types
JOB_TYPE_NOTIFY = "notify"
JOB_TYPE_ECHO = "echo"
JOB_TYPE_SLEEP = "sleep"

# Metrics names
METRIC_QUEUE_DEPTH = "jobrelay_queue_depth"
METRIC_JOBS_ENQUEUED = "jobrelay_jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobrelay_jobs_finished_total"
METRIC_JOB_DURATION = "jobrelay_job_duration_seconds"
METRIC_LEASES_REAPED = "jobrelay_leases_reaped_total"
METRIC_JOBS_CLAIMED = "jobrelay_jobs_claimed_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"

# Status-change event types
EVENT_JOB_CREATED = "job.created"
EVENT_JOB_STARTED = "job.started"
EVENT_JOB_COMPLETED = "job.completed"
EVENT_JOB_RETRIED = "job.retried"
EVENT_JOB_FAILED = "job.failed"
EVENT_JOB_CANCELLED = "job.cancelled"
EVENT_JOB_CANCEL_REQUESTED = "job.cancel_requested"
EVENT_JOB_REQUEUED = "job.requeued"
EVENT_JOB_REAPED = "job.reaped"
