"""
Centralized async retry utility for transient failures.

Retry policy:
- Exponential backoff with jitter
- Only the exception types in retry_on are retried
- Domain/validation errors are raised immediately
- The original exception is raised after the last attempt
- No logging inside the utility (caller handles logging)
"""

import asyncio
import inspect
import random
from typing import Callable, Type, Tuple, Any
import asyncpg
import httpx


DEFAULT_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


# Transient exceptions that should be retried
TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    asyncpg.PostgresError,
    asyncio.TimeoutError,
    httpx.TransportError,  # connect/read/write errors and timeouts
    ConnectionError,
    OSError,
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for attempt N (0-based) with ±20% jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    jitter = delay * 0.2 * (random.random() * 2 - 1)
    return max(0.0, delay + jitter)


async def retry_async(
    fn: Callable[[], Any],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retry_on: Tuple[Type[Exception], ...] = TRANSIENT_EXCEPTIONS,
) -> Any:
    """
    Call fn() up to retries + 1 times, sleeping backoff_delay() between attempts.

    fn is called afresh for every attempt; its result is awaited only when
    awaitable. Exceptions outside retry_on propagate immediately, the last
    retryable one propagates once attempts run out.
    """
    attempt = 0
    while True:
        try:
            outcome = fn()
            return await outcome if inspect.isawaitable(outcome) else outcome
        except retry_on:
            if attempt >= retries:
                raise
        await asyncio.sleep(backoff_delay(attempt, base_delay, max_delay))
        attempt += 1
