"""
Bounded exponential-backoff retry for idempotent operations.

Only operations that are read-only and safely repeatable (image fetches) are
wrapped in ``retry_async``; every other lifecycle step runs exactly once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from stackpilot.errors import TransientInfrastructureError
from stackpilot.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """
    Retry parameters.

    The delay after failed attempt ``n`` (1-based) is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``.
    """

    max_attempts: int = Field(default=3, ge=1, description="Total attempts")
    base_delay: float = Field(default=10.0, ge=0, description="First delay in seconds")
    max_delay: float = Field(default=60.0, ge=0, description="Delay cap in seconds")
    multiplier: float = Field(default=2.0, ge=1, description="Backoff multiplier")

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after failed attempt ``attempt``."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (TransientInfrastructureError,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy is exhausted.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt count and backoff parameters.
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately.
        description: Human-readable name used in log records and errors.
        sleep: Awaitable sleep function (injectable for tests).

    Returns:
        The operation's result.

    Raises:
        TransientInfrastructureError: When every attempt failed; chained
            from the last error.
    """

    def log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"{description} failed, retrying",
            extra={
                "attempt": retry_state.attempt_number,
                "max_attempts": policy.max_attempts,
                "delay_seconds": retry_state.next_action.sleep if retry_state.next_action else 0,
                "error": str(error),
            },
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.base_delay, exp_base=policy.multiplier, max=policy.max_delay
        ),
        retry=retry_if_exception_type(retry_on),
        sleep=sleep,
        before_sleep=log_retry,
    )

    try:
        return await retrying(operation)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(
            f"{description} failed after {policy.max_attempts} attempts",
            extra={"error": str(last_error)},
        )
        raise TransientInfrastructureError(
            f"{description} failed after {policy.max_attempts} attempts: {last_error}",
            details={"attempts": policy.max_attempts, "last_error": str(last_error)},
        ) from last_error
