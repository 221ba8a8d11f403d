"""Tenacity retry combinator driven by a failure classifier.

Provides:
- ``Decision``: what to do with a failed attempt
- ``linear_wait``: ``step * n`` delay before attempt ``n + 1``
- ``retry_with_classifier``: run an async callable under a classifier-driven
  ``tenacity.AsyncRetrying`` controller

Failures classified as ``FAIL`` are re-raised on the spot, without sleeping
and without consuming the remaining attempts. ``RETRY`` failures sleep and try
again until the attempt budget runs out, after which the last exception is
re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import tenacity
from tenacity import RetryCallState, retry_if_exception, stop_after_attempt

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class Decision(Enum):
    """Outcome of classifying a failed attempt."""

    RETRY = "retry"
    FAIL = "fail"


Classifier = Callable[[BaseException], Decision]
SleepFn = Callable[[float], Awaitable[Any]]


def linear_wait(step_s: float) -> tenacity.wait.wait_base:
    """Delay of ``step_s * n`` seconds after the n-th failed attempt."""
    if step_s <= 0:
        return tenacity.wait_none()
    return tenacity.wait_incrementing(start=step_s, increment=step_s)


def _make_before_sleep_hook(operation: str) -> Callable[[RetryCallState], None]:
    def _hook(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait_s = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            f"retry {operation}: attempt={retry_state.attempt_number} "
            f"wait_ms={int(wait_s * 1000)} error={type(exc).__name__}: {exc}"
        )

    return _hook


def build_retrying(
    *,
    classifier: Classifier,
    max_attempts: int,
    wait: Optional[tenacity.wait.wait_base] = None,
    sleep: SleepFn = asyncio.sleep,
    operation: str = "request",
) -> tenacity.AsyncRetrying:
    """Build an async Tenacity controller that consults ``classifier`` on every failure.

    Args:
        classifier: Maps an exception to ``Decision.RETRY`` or ``Decision.FAIL``
        max_attempts: Total attempts including the first
        wait: Wait strategy between attempts (no wait when omitted)
        sleep: Awaitable sleep, injectable for tests
        operation: Label used in retry log lines

    Returns:
        Configured ``tenacity.AsyncRetrying`` instance
    """
    return tenacity.AsyncRetrying(
        retry=retry_if_exception(lambda exc: classifier(exc) is Decision.RETRY),
        stop=stop_after_attempt(max_attempts),
        wait=wait if wait is not None else tenacity.wait_none(),
        sleep=sleep,
        before_sleep=_make_before_sleep_hook(operation),
        reraise=True,
    )


async def retry_with_classifier(
    fn: Callable[[], Awaitable[T]],
    *,
    classifier: Classifier,
    max_attempts: int,
    wait: Optional[tenacity.wait.wait_base] = None,
    sleep: SleepFn = asyncio.sleep,
    operation: str = "request",
) -> T:
    """Await ``fn`` under a classifier-driven retry policy and return its result."""
    retrying = build_retrying(
        classifier=classifier,
        max_attempts=max_attempts,
        wait=wait,
        sleep=sleep,
        operation=operation,
    )
    return await retrying(fn)
