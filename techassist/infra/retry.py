"""
Timeouts and bounded exponential backoff for external calls.

Every adapter call goes through ``call_with_retry``. Each attempt gets its own
timeout; only errors flagged ``retryable`` (timeouts, connection failures,
5xx responses) are retried.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from techassist.config import settings
from techassist.core.errors import AdapterTimeout, DispatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based)."""
    return min(base_delay * (2 ** attempt), max_delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> T:
    """Run ``operation`` with a per-attempt timeout and bounded retries.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt)
        description: Label used in logs and timeout errors
        attempts: Maximum attempts (defaults to settings.retry_attempts)
        timeout: Per-attempt timeout in seconds
        base_delay: First backoff delay
        max_delay: Cap for a single backoff delay

    Returns:
        The operation's result

    Raises:
        AdapterTimeout: If every attempt timed out
        DispatchError: The last retryable error, or the first non-retryable one
    """
    attempts = attempts or settings.retry_attempts
    timeout = timeout or settings.external_timeout
    base_delay = settings.retry_base_delay if base_delay is None else base_delay
    max_delay = settings.retry_max_delay if max_delay is None else max_delay

    last_error: Optional[DispatchError] = None

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)

        except asyncio.TimeoutError:
            last_error = AdapterTimeout(f"{description} timed out after {timeout}s")

        except DispatchError as e:
            if not e.retryable:
                raise
            last_error = e

        if attempt + 1 < attempts:
            wait_time = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{description} failed ({last_error.error_code}), "
                f"retrying in {wait_time}s (attempt {attempt + 1}/{attempts})"
            )
            await asyncio.sleep(wait_time)

    logger.error(f"{description} failed after {attempts} attempts")
    raise last_error or AdapterTimeout(f"{description} exhausted retries")


async def call_once(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    timeout: Optional[float] = None,
) -> T:
    """Run ``operation`` a single time under a timeout, never retrying.

    Used for calls that are unsafe to repeat, such as payment creation
    without an idempotency key.
    """
    timeout = timeout or settings.external_timeout
    try:
        return await asyncio.wait_for(operation(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise AdapterTimeout(f"{description} timed out after {timeout}s") from e
