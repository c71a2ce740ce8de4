"""Bounded exponential backoff for ledger calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, initial_delay: float, backoff_factor: float, max_delay: float) -> float:
    """Delay before retrying after 0-indexed `attempt` failed."""
    return min(initial_delay * backoff_factor ** attempt, max_delay)


class RetryExhausted(Exception):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    initial_delay: float,
    max_delay: float,
    backoff_factor: float,
    retry_on: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> T:
    """
    Run `operation` up to `max_attempts` times.

    Errors for which `retry_on` is False propagate immediately. When every
    attempt fails with a retryable error, RetryExhausted carries the last one.
    """
    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as exc:
            if not retry_on(exc):
                raise
            if attempt + 1 >= max_attempts:
                raise RetryExhausted(max_attempts, exc) from exc
            delay = backoff_delay(attempt, initial_delay, backoff_factor, max_delay)
            if on_retry:
                on_retry(attempt + 1, exc, delay)
            else:
                logger.warning(f"[RETRY] attempt {attempt + 1}/{max_attempts} failed: {exc}; retrying in {delay:.1f}s")
            await sleep(delay)
    raise RuntimeError("max_attempts must be >= 1")
