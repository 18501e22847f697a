"""Retry engine with exponential backoff and error classification.

Every fallible remote operation (provider calls, container deploys, remote
scripts) is wrapped in one of the helpers below. Attempts are numbered from
1 and the attempt number is passed to the wrapped callable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TypeVar

from convoy.lib.errors import NonRetryableError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF = 5.0


class RetryDecision(str, Enum):
    """Classifier verdict for a failed attempt."""

    RETRY = "retry"
    STOP = "stop"


def _always_retry(_error: Exception) -> RetryDecision:
    return RetryDecision.RETRY


async def retry_with_backoff_classified(
    attempts: int,
    initial_delay: float,
    operation: str,
    classify: Callable[[Exception], RetryDecision],
    func: Callable[[int], Awaitable[T]],
) -> T:
    """Run ``func`` until it succeeds, the classifier stops, or attempts run out.

    Args:
        attempts: Maximum number of calls to ``func`` (must be >= 1)
        initial_delay: Seconds to wait after the first failure; doubles after
            each further failure up to ``MAX_BACKOFF``
        operation: Label used in log lines and error messages
        classify: Maps a failure to RETRY or STOP
        func: Async callable receiving the 1-based attempt number

    Returns:
        The first successful result of ``func``

    Raises:
        ValueError: If ``attempts`` is less than 1
        NonRetryableError: If ``classify`` returned STOP
        RetryExhaustedError: If every attempt failed
    """
    if attempts < 1:
        raise ValueError(f"{operation}: retry requires attempts >= 1")

    delay = max(initial_delay, 0.0)
    for attempt in range(1, attempts + 1):
        try:
            return await func(attempt)
        except Exception as exc:
            decision = classify(exc)
            if decision == RetryDecision.STOP:
                raise NonRetryableError(operation, attempt, exc) from exc
            if attempt == attempts:
                raise RetryExhaustedError(operation, attempts, exc) from exc

            logger.warning(
                "%s failed on attempt %d/%d: %s. Retrying in %.2fs",
                operation,
                attempt,
                attempts,
                exc,
                delay,
            )
            if delay > 0:
                await asyncio.sleep(delay)
            delay = min(delay * 2, MAX_BACKOFF)

    raise AssertionError("retry loop always returns before completion")


async def retry_with_backoff(
    attempts: int,
    initial_delay: float,
    operation: str,
    func: Callable[[int], Awaitable[T]],
) -> T:
    """Retry ``func`` on any failure. See ``retry_with_backoff_classified``."""
    return await retry_with_backoff_classified(
        attempts, initial_delay, operation, _always_retry, func
    )
