"""
Reusable retry helpers for the service.

This module contains:
- A coroutine-level retry loop with exponential backoff plus jitter.
- The retriable/fatal classification for upstream failures.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from config.settings import MAX_RETRY_ATTEMPTS, RETRY_BASE_DELAY, RETRY_MAX_JITTER
from utils.constants import RETRIABLE_MESSAGE_PATTERN
from utils.errors import CircuitBreakerError, FetchError, TransientNetworkError

logger = logging.getLogger("pokedex.decorators")


def is_retriable_status(status: int) -> bool:
    """5xx and 429 are worth another attempt; every other error status is final."""
    return status == 429 or 500 <= status <= 599


def is_retriable_error(error: BaseException) -> bool:
    """
    Decide whether a failed attempt should be retried.

    Circuit-open errors are never retried. Explicit fetch errors carry their
    own classification. Anything else is matched by type (timeouts, aiohttp
    connection faults) and then by message pattern.

    Args:
        error: The exception raised by the attempt.

    Returns:
        True when the failure is transient.
    """
    if isinstance(error, CircuitBreakerError):
        return False
    if isinstance(error, TransientNetworkError):
        return True
    if isinstance(error, FetchError):
        return False
    if isinstance(
        error,
        (
            asyncio.TimeoutError,
            aiohttp.ServerDisconnectedError,
            aiohttp.ClientConnectionError,
            aiohttp.ClientPayloadError,
        ),
    ):
        return True
    return bool(RETRIABLE_MESSAGE_PATTERN.search(str(error) or type(error).__name__))


def backoff_delay(attempt: int, base_delay: float, jitter: float) -> float:
    """Delay before retry number `attempt + 1`: `base * 2^attempt + U(0, jitter)`."""
    delay = base_delay * (2**attempt)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay


async def call_with_retry(
    func: Callable[[], Awaitable[Any]],
    attempts: int = MAX_RETRY_ATTEMPTS,
    base_delay: float = RETRY_BASE_DELAY,
    jitter: float = RETRY_MAX_JITTER,
    should_retry: Callable[[BaseException], bool] = is_retriable_error,
    label: Optional[str] = None,
) -> Any:
    """
    Run `func` up to `attempts` times with exponential backoff.

    The delay formula is: `delay = base_delay * (2^attempt) + random(0, jitter)`.
    Non-retriable errors propagate immediately. When the budget is exhausted
    the last observed error is re-raised unchanged, so its message survives.

    Args:
        func: Zero-argument coroutine factory performing one attempt.
        attempts: Total number of attempts (not retries).
        base_delay: Initial delay in seconds.
        jitter: Upper bound of the random jitter in seconds.
        should_retry: Classifier deciding whether an error is transient.
        label: Name used in log lines.

    Returns:
        Whatever `func` returns on its first successful attempt.

    Raises:
        Exception: The last exception encountered if all attempts fail.
    """
    attempts = max(1, attempts)
    name = label or getattr(func, "__name__", "call")

    for attempt in range(attempts):
        try:
            return await func()
        except Exception as e:
            if not should_retry(e):
                raise

            if attempt == attempts - 1:
                logger.error(f"{name} failed after {attempts} attempts: {e}")
                raise

            delay = backoff_delay(attempt, base_delay, jitter)

            logger.warning(
                f"{name} attempt {attempt + 1}/{attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )

            await asyncio.sleep(delay)

