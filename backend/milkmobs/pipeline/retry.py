"""Deadline and retry helpers for infrastructure calls."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryPolicy
from .errors import InfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_deadline(
    awaitable: Awaitable[T],
    timeout: Optional[float],
    operation: str,
) -> T:
    """Await ``awaitable``, converting a missed deadline into ``InfraError``."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise InfraError(f"{operation} exceeded deadline of {timeout}s", operation) from e


async def call_with_retries(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation: str,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``op`` with a per-attempt deadline and bounded exponential backoff.

    Only ``InfraError`` is retried. Anything else propagates immediately,
    including ``asyncio.CancelledError``.

    Args:
        op: Zero-argument coroutine factory (called once per attempt)
        policy: Retry policy
        operation: Name used in logs and errors
        timeout: Per-attempt deadline in seconds
        sleep: Sleep function (overridable in tests)

    Returns:
        Result of the first successful attempt

    Raises:
        InfraError: When every attempt failed
    """
    last_error: Optional[InfraError] = None

    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await with_deadline(op(), timeout, operation)
        except InfraError as e:
            last_error = e
            if attempt >= attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation} attempt {attempt}/{attempts} failed: {e}; "
                f"retrying in {delay:.2f}s"
            )
            await sleep(delay)

    logger.error(f"{operation} exhausted {attempts} attempts: {last_error}")
    raise last_error
