"""
Error taxonomy for the job queue.

Store and admin operations raise these directly; handlers signal outcomes by
raising TransientError / PermanentError or returning a JobResult.
"""

from uuid import UUID

from jobrelay.constants import JobStatus


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class ValidationError(JobQueueError):
    """Rejected enqueue: unknown job type or invalid payload. No job is created."""


class JobNotFoundError(JobQueueError):
    """The referenced job does not exist."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidTransitionError(JobQueueError):
    """A status mutation was attempted from an incompatible state."""

    def __init__(
        self,
        job_id: UUID,
        current: JobStatus,
        target: JobStatus,
        reason: str | None = None,
    ):
        self.job_id = job_id
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Job {job_id} cannot move from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class HandlerError(JobQueueError):
    """Failure signalled by a job handler."""

    retryable: bool = True


class TransientError(HandlerError):
    """Retryable failure; the job is retried with backoff until attempts run out."""

    retryable = True


class PermanentError(HandlerError):
    """Terminal failure on first occurrence."""

    retryable = False


class JobCancelledError(JobQueueError):
    """Raised at a handler checkpoint once cancellation has been requested."""


class StoreUnavailableError(JobQueueError):
    """The persistence layer could not be reached or failed mid-operation."""
