"""Bounded exponential-backoff retry, independent of the HTTP layer."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_DELAY_SEC = 0.5


def backoff_delays(max_attempts: int = MAX_ATTEMPTS, base_delay: float = BASE_DELAY_SEC) -> list[float]:
    """Delays slept before attempts 2..max_attempts: base, 2*base, 4*base, ..."""
    return [base_delay * (2 ** i) for i in range(max_attempts - 1)]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    should_retry: Callable[[BaseException], bool],
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_DELAY_SEC,
    sleep: Callable[[float], Awaitable[object]] = anyio.sleep,
    on_error: Callable[[BaseException | None], None] | None = None,
    description: str = "operation",
) -> T:
    """Run *operation* up to *max_attempts* times.

    Exceptions for which *should_retry* is false propagate immediately.
    Intermediate failures are logged at DEBUG only; the final one is
    re-raised unchanged. *on_error* receives each failure, and ``None``
    once the operation succeeds.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    delays = backoff_delays(max_attempts, base_delay)
    for attempt in range(1, max_attempts + 1):
        try:
            result = await operation()
        except Exception as exc:
            if on_error is not None:
                on_error(exc)
            if not should_retry(exc) or attempt == max_attempts:
                raise
            delay = delays[attempt - 1]
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, max_attempts, exc, delay,
            )
            await sleep(delay)
            continue
        if on_error is not None:
            on_error(None)
        if attempt > 1:
            logger.debug("%s succeeded on attempt %d", description, attempt)
        return result

    raise AssertionError("unreachable")  # pragma: no cover
