"""
Retry policy for mutating grievance operations.

A single policy object decides how many attempts to make, how long to back off
between them, and which errors are worth another attempt. Each attempt must be
a self-contained unit of work (fresh session, fresh transaction) so a retried
call never observes the partial state of a failed one.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .config import Settings, get_settings
from .exceptions import GrievanceEngineError


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# CONFIGURATION
# =============================================================================


def is_retryable_error(exc: BaseException) -> bool:
    """Default predicate: only engine errors flagged as retryable."""
    return isinstance(exc, GrievanceEngineError) and exc.retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.1
    backoff_factor: float = 2.0
    max_delay_seconds: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


NO_RETRY = RetryPolicy(max_attempts=1)


# =============================================================================
# EXECUTION
# =============================================================================


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Non-retryable errors propagate on the first failure. When attempts are
    exhausted the last error propagates unchanged, so callers can still tell a
    conflict from an outage.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not policy.is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed on attempt {attempt}/{policy.max_attempts} "
                f"({type(e).__name__}: {e}); retrying in {delay:.2f}s"
            )
            if delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
