"""Bounded retry with exponential backoff for provider calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from cashflow_ingest.services.ingest.errors import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number *attempt* (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_retries: int,
    base_delay: float,
    max_delay: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *call*, retrying retryable provider errors up to *max_retries* times.

    Non-retryable errors and the last retryable error propagate unchanged.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_retries:
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s: attempt %d failed (%s) – retrying in %.1fs", label, attempt, exc, delay
            )
            await sleep(delay)
