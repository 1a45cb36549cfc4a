"""
Exponential back-off retry for single async operations.

Schedule (base_delay=1.0, max_attempts=3):
    attempt 1 fails → wait 1s
    attempt 2 fails → wait 2s
    attempt 3 fails → wait 4s → raise last error

The wait after the final attempt is part of the schedule: a fully failed
operation surfaces its error after 1s+2s+4s of cumulative back-off.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay after the given 1-based failed attempt: base × 2^(attempt−1)."""
    return base_delay * (2 ** (attempt - 1))


async def retry_async(
    operation:    Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay:   float,
    retry_on:     tuple[type[BaseException], ...] = (Exception,),
    label:        str = "operation",
) -> T:
    """
    Run `operation` up to `max_attempts` times.

    Only exceptions in `retry_on` are retried; anything else propagates
    immediately. After exhausting attempts the last error is re-raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "Retry | op=%s attempt=%d/%d delay=%.1fs error=%s",
                label, attempt, max_attempts, delay, exc,
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    raise last_error
