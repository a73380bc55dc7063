"""
Explicit result type and retry helper for provider calls.

Source clients return Result instead of raising, so the aggregator can
collect per-source failures as data. retry_async re-runs an operation
with exponential backoff while the failure is retryable.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from collector.errors import SourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a SourceError, plus the number of attempts made."""
    value: Optional[T] = None
    error: Optional[SourceError] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T, attempts: int = 1) -> "Result[T]":
        return cls(value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: SourceError, attempts: int = 1) -> "Result[T]":
        return cls(error=error, attempts=attempts)

    def unwrap(self) -> T:
        """Return the value or raise the captured error."""
        if self.error is not None:
            raise self.error
        return self.value


def exponential_backoff(base_delay: float = 1.0, max_delay: float = 30.0) -> Callable[[int], float]:
    """
    Build a backoff function: base_delay * 2^(attempt - 1), capped.

    Args:
        base_delay: Delay after the first failed attempt (seconds)
        max_delay: Upper bound for any single delay
    """
    def backoff(attempt: int) -> float:
        return min(base_delay * (2 ** (attempt - 1)), max_delay)

    return backoff


def is_retryable_error(error: SourceError) -> bool:
    return error.retryable


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    backoff: Optional[Callable[[int], float]] = None,
    is_retryable: Callable[[SourceError], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "request",
) -> Result[T]:
    """
    Run an async operation, retrying retryable SourceErrors.

    Only SourceError is treated as a provider failure; any other exception
    is a programming error and propagates.

    Args:
        operation: Zero-argument coroutine factory
        max_attempts: Total attempts including the first
        backoff: attempt number -> delay seconds (default 1s doubling)
        is_retryable: Predicate deciding whether a failure is retried
        sleep: Awaitable sleep (injectable for tests)
        description: Label used in log messages

    Returns:
        Result with the value, or the last error when attempts run out
    """
    backoff = backoff or exponential_backoff()
    last_error: Optional[SourceError] = None

    for attempt in range(1, max_attempts + 1):
        try:
            value = await operation()
            return Result.success(value, attempts=attempt)
        except SourceError as e:
            last_error = e
            if not is_retryable(e):
                logger.debug("Non-retryable error on %s: %s", description, e)
                return Result.failure(e, attempts=attempt)

            logger.warning(
                "Retryable error on %s attempt %d/%d: %s",
                description,
                attempt,
                max_attempts,
                e,
            )

        # Apply exponential backoff before retry
        if attempt < max_attempts:
            delay = backoff(attempt)
            logger.debug("Waiting %.1fs before retry %d", delay, attempt + 1)
            await sleep(delay)

    return Result.failure(last_error, attempts=max_attempts)
