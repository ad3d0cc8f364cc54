"""
Shared async task utilities.

Provides bounded retry with exponential backoff for calls into remote
chain data sources, and a fail-fast concurrent gather.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return float(min(max_delay, base_delay * (2 ** (attempt - 1))))


async def retry_async(
    name: str,
    func: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    retry_if: Callable[[BaseException], bool] | None = None,
) -> T:
    """
    Await ``func()`` until it succeeds or the attempt budget is spent.

    Only exceptions matching ``retry_on`` are retried; anything else propagates
    immediately. Cancellation is never retried.

    Args:
        name: Human-readable operation name for logging
        func: Zero-argument coroutine factory
        attempts: Total number of attempts (>= 1)
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for a single delay
        retry_on: Exception types considered transient
        retry_if: Optional extra predicate; a matching exception for which it
            returns False propagates immediately

    Returns:
        The result of the first successful call

    Raises:
        The last transient exception once attempts are exhausted
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except retry_on as e:
            if retry_if is not None and not retry_if(e):
                raise
            if attempt == attempts:
                logger.error(f"{name} failed after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{name} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


async def gather_cancelling(*coros: Coroutine[Any, Any, T]) -> list[T]:
    """
    Run coroutines concurrently and return their results in order.

    Unlike ``asyncio.gather``, the first failure cancels every sibling still
    running before it propagates. The error is re-raised unwrapped so callers
    can keep catching the concrete exception type.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(coro) for coro in coros]
    except BaseExceptionGroup as eg:
        raise eg.exceptions[0] from None
    return [task.result() for task in tasks]
