"""Backoff Executor: bounded retries with exponential delay and jitter.

WHY: Every call to Slack or to a peer relay can be rate limited or fail
transiently. Wrapping each call in the same executor keeps the retry
behaviour uniform and testable instead of scattering sleep loops.

HOW: retry_with_backoff() awaits the operation up to policy.attempts
times. After a failure it asks the policy whether the error is
retryable; if so it sleeps for the server-supplied retry-after hint (when
present) or for min(max_delay_ms, base_delay_ms * 2^(attempt-1)), then
applies symmetric jitter and tries again.

RULES:
- Non-retryable errors and the final attempt's error propagate unchanged
- A retry-after hint is used verbatim (before jitter), never capped
- Jittered delay is clamped to >= 0 and floored to whole milliseconds
- The executor has no side effects besides sleeping
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always_retryable(error: BaseException) -> bool:
    return True


def _no_retry_after(error: BaseException) -> Optional[float]:
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for one family of retried calls.

    RULES:
    - attempts >= 1 (1 means "no retries")
    - jitter is a fraction: 0.2 means delay +/- 20%
    - is_retryable defaults to "always retryable"
    - get_retry_after_ms returns None when the error carries no hint
    """

    attempts: int = 3
    base_delay_ms: float = 500
    max_delay_ms: float = 4000
    jitter: float = 0.2
    is_retryable: Callable[[BaseException], bool] = _always_retryable
    get_retry_after_ms: Callable[[BaseException], Optional[float]] = _no_retry_after

    def backoff_ms(self, attempt: int) -> float:
        """Exponential delay for a 1-based attempt index, before jitter."""
        return min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))

    def delay_ms(self, attempt: int, error: BaseException) -> int:
        """Delay to wait after ``attempt`` failed with ``error``.

        Uses the server hint if there is one, otherwise the exponential
        backoff, then applies uniform jitter in [-jitter, +jitter].
        """
        retry_after = self.get_retry_after_ms(error)
        base = retry_after if retry_after is not None else self.backoff_ms(attempt)
        spread = base * self.jitter
        delay = base + random.uniform(-spread, spread)
        return max(0, math.floor(delay))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory. Called once per attempt.
        policy: Retry limits, delays and predicates.
        sleep: Awaitable sleep taking seconds; injectable for tests.

    Returns:
        The first successful result.

    Raises:
        The last error, or the first non-retryable one.
    """
    if policy.attempts < 1:
        raise ValueError("RetryPolicy.attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.attempts or not policy.is_retryable(exc):
                raise
            delay = policy.delay_ms(attempt, exc)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %dms",
                attempt, policy.attempts, exc, delay,
            )
            await sleep(delay / 1000.0)
            attempt += 1
