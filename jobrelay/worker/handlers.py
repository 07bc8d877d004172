"""
Job handler registry and built-in handlers.

Job handlers must be idempotent - they may be executed multiple times
for the same job after a worker crash or an expired lease.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from jobrelay.constants import JOB_TYPE_ECHO, JOB_TYPE_NOTIFY, JOB_TYPE_SLEEP
from jobrelay.db.subscriptions import SubscriptionStore
from jobrelay.errors import PermanentError, ValidationError
from jobrelay.notifications import PushTransport, make_notify_handler
from jobrelay.types.job import JobContext, JobResult
from jobrelay.types.notifications import NotificationPayload

logger = logging.getLogger(__name__)

# Type alias for job handler functions. Any return value other than a
# JobResult is treated as successful output.
JobHandler = Callable[[Any, JobContext], Awaitable[Any]]


@dataclass(frozen=True)
class HandlerRegistration:
    """A job type bound to its handler, payload schema and timeout."""

    job_type: str
    handler: JobHandler
    schema: type[BaseModel] | None = None
    timeout_seconds: float | None = None

    def decode(self, payload: dict[str, Any]) -> Any:
        """
        Decode a raw payload against the schema.

        Raises:
            PydanticValidationError: The payload does not match the schema.
        """
        if self.schema is None:
            return payload
        return self.schema.model_validate(payload)


class HandlerRegistry:
    """
    Mapping from job type to handler.

    Built once at startup and passed to the store (enqueue validation) and
    the worker pool (execution).
    """

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerRegistration] = {}

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        *,
        schema: type[BaseModel] | None = None,
        timeout_seconds: float | None = None,
    ) -> HandlerRegistration:
        """
        Register a handler for a job type.

        Raises:
            ValueError: The job type is already registered.
        """
        if job_type in self._handlers:
            raise ValueError(f"Handler already registered for job type: {job_type}")
        registration = HandlerRegistration(
            job_type=job_type,
            handler=handler,
            schema=schema,
            timeout_seconds=timeout_seconds,
        )
        self._handlers[job_type] = registration
        logger.info(f"Registered handler for job type: {job_type}")
        return registration

    def handler(
        self,
        job_type: str,
        *,
        schema: type[BaseModel] | None = None,
        timeout_seconds: float | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Example:
            @registry.handler("send_digest", schema=DigestPayload)
            async def handle_digest(payload: DigestPayload, context: JobContext) -> JobResult:
                ...
        """

        def decorator(func: JobHandler) -> JobHandler:
            self.register(
                job_type, func, schema=schema, timeout_seconds=timeout_seconds
            )
            return func

        return decorator

    def get(self, job_type: str) -> HandlerRegistration | None:
        return self._handlers.get(job_type)

    def types(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def validate(self, job_type: str, payload: dict[str, Any]) -> None:
        """
        Check that a job can be processed before it is accepted.

        Raises:
            ValidationError: Unknown job type or payload rejected by the schema.
        """
        registration = self._handlers.get(job_type)
        if registration is None:
            raise ValidationError(f"No handler registered for job type: {job_type}")
        try:
            registration.decode(payload)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid payload for job type {job_type}: {e.error_count()} error(s)"
            ) from e

    def decode(self, job_type: str, payload: dict[str, Any]) -> tuple[HandlerRegistration, Any]:
        """
        Resolve the handler and decode the stored payload for execution.

        Raises:
            PermanentError: Unknown type or undecodable payload; retrying cannot help.
        """
        registration = self._handlers.get(job_type)
        if registration is None:
            raise PermanentError(f"No handler registered for job type: {job_type}")
        try:
            return registration, registration.decode(payload)
        except PydanticValidationError as e:
            raise PermanentError(f"Payload does not match schema for {job_type}") from e


# ============================================================================
# Built-in job handlers
# ============================================================================


class SleepPayload(BaseModel):
    """Payload of the sleep diagnostic job."""

    duration_seconds: float = Field(default=1.0, ge=0, le=3600)
    checkpoint_interval: float = Field(default=0.5, gt=0)


async def handle_echo(payload: dict[str, Any], context: JobContext) -> JobResult:
    """
    Echo handler for diagnostics.

    Simply returns the input payload as output.
    """
    logger.info(
        "Echo job executing",
        extra={"job_id": str(context.job_id), "attempt": context.attempt},
    )
    return JobResult.ok({"echo": payload})


async def handle_sleep(payload: SleepPayload, context: JobContext) -> JobResult:
    """
    Long running job for exercising timeouts and cooperative cancellation.

    Sleeps in checkpoint_interval slices and stops at the first checkpoint
    after a cancellation request.
    """
    elapsed = 0.0
    while elapsed < payload.duration_seconds:
        await context.checkpoint()
        step = min(payload.checkpoint_interval, payload.duration_seconds - elapsed)
        await asyncio.sleep(step)
        elapsed += step

        logger.debug(
            "Sleep job progress",
            extra={
                "job_id": str(context.job_id),
                "progress": f"{elapsed:.1f}/{payload.duration_seconds}s",
            },
        )

    return JobResult.ok({"slept_for": payload.duration_seconds})


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    """Register the diagnostic echo and sleep handlers."""
    registry.register(JOB_TYPE_ECHO, handle_echo)
    registry.register(JOB_TYPE_SLEEP, handle_sleep, schema=SleepPayload)
    return registry


def create_default_registry(
    subscriptions: SubscriptionStore,
    transport: PushTransport,
) -> HandlerRegistry:
    """Registry with the notify job type and the diagnostic handlers."""
    registry = HandlerRegistry()
    registry.register(
        JOB_TYPE_NOTIFY,
        make_notify_handler(subscriptions, transport),
        schema=NotificationPayload,
    )
    return register_builtin_handlers(registry)
