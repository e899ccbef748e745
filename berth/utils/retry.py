"""Bounded retry with exponential backoff for transient runtime failures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: float,
    retry_on: tuple[type[BaseException], ...],
    operation: str,
) -> T:
    """Call ``func`` until it succeeds or ``attempts`` are exhausted.

    Sleeps ``backoff * 2**n`` seconds between attempts. Exceptions outside
    ``retry_on`` propagate immediately; the last retryable exception is
    re-raised once attempts run out.

    Args:
        func: Zero-argument coroutine factory
        attempts: Total number of attempts (>= 1)
        backoff: Base delay in seconds
        retry_on: Exception types considered transient
        operation: Name used in log events
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(
                "retry.attempt_failed",
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
