"""
Retry and backoff policy.

Backoff is a pure function of the attempt number; randomness only enters
through an injectable random source, so the policy is testable without a
clock or a database.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from jobrelay.config import Settings
from jobrelay.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """
    Exponential backoff: min(base * 2**attempt, cap).

    Args:
        attempt: Attempts made so far (0 or more).
        base: Base delay in seconds.
        cap: Upper bound in seconds.
    """
    if attempt < 0:
        raise ValueError("attempt must not be negative")
    # Avoid float overflow for very large attempt counts
    if attempt >= 64:
        return cap
    return min(base * (2**attempt), cap)


@dataclass
class RetryPolicy:
    """
    Capped exponential backoff with optional multiplicative jitter.

    With jitter j the delay is scaled by a factor drawn uniformly from
    [1 - j, 1], so it never exceeds the cap.
    """

    base_seconds: float = 1.0
    cap_seconds: float = 3600.0
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("backoff bounds must not be negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    @classmethod
    def for_jobs(cls, settings: Settings) -> "RetryPolicy":
        """Policy for rescheduling failed jobs."""
        return cls(
            base_seconds=settings.retry_base_seconds,
            cap_seconds=settings.retry_cap_seconds,
            jitter=settings.retry_jitter,
        )

    @classmethod
    def for_store(cls, settings: Settings) -> "RetryPolicy":
        """Policy for backing off while the job store is unavailable."""
        return cls(
            base_seconds=settings.store_retry_base_seconds,
            cap_seconds=settings.store_retry_cap_seconds,
            jitter=0.0,
        )

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before the next try after `attempt` tries."""
        delay = compute_backoff(attempt, self.base_seconds, self.cap_seconds)
        if self.jitter:
            delay *= 1.0 - self.jitter * self.rng.random()
        return delay

    @staticmethod
    def should_retry(attempts: int, max_attempts: int, retryable: bool) -> bool:
        """Whether a failed execution gets another attempt."""
        return retryable and attempts < max_attempts


async def retry_store_operation(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    max_tries: int,
    description: str = "store operation",
) -> T:
    """
    Run a store operation, backing off while the store is unavailable.

    Raises:
        StoreUnavailableError: The store stayed unavailable for max_tries.
    """
    for attempt in range(max_tries):
        try:
            return await operation()
        except StoreUnavailableError:
            if attempt + 1 >= max_tries:
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                f"Retrying {description} after store failure",
                extra={"attempt": attempt + 1, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)
    raise StoreUnavailableError(f"{description} was not attempted")
