"""Token Bucket Limiter: per-tenant throttling of inbound relay traffic.

WHY: A single tenant bursting messages must not push the bot over Slack's
rate limits for everyone else. A token bucket allows short bursts up to
``capacity`` and then a steady ``refill_per_ms`` rate.

HOW: RateLimiterRegistry owns a dict of TokenBucket objects keyed by a
string (e.g. ``relay-in:T123``). take() lazily creates the bucket, refills
it for the elapsed wall-clock time, then either debits the cost and
returns 0 or returns the milliseconds the caller should wait. It never
blocks and never reserves tokens for the caller.

RULES:
- First writer wins: a later take() with a different config for an
  existing key reuses the first bucket
- Refill-then-debit is atomic per bucket (threading.Lock)
- Buckets live as long as the registry; they are never evicted
- Wait time is ceil((cost - tokens) / refill_per_ms)
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Dict


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True)
class TokenBucketConfig:
    capacity: float
    refill_per_ms: float


class TokenBucket:
    """A single bucket. Starts full."""

    def __init__(self, config: TokenBucketConfig, clock: Callable[[], float] = _now_ms) -> None:
        if config.capacity <= 0 or config.refill_per_ms <= 0:
            raise ValueError("Token bucket capacity and refill rate must be positive")
        self.capacity = float(config.capacity)
        self.refill_per_ms = float(config.refill_per_ms)
        self._clock = clock
        self.tokens = self.capacity
        self.last_refill = clock()
        self._lock = threading.Lock()

    def take(self, cost: float = 1) -> int:
        """Debit ``cost`` tokens, or return the wait in ms without debiting."""
        with self._lock:
            now = self._clock()
            elapsed = now - self.last_refill
            if elapsed > 0:
                self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_ms)
                self.last_refill = now

            if self.tokens >= cost:
                self.tokens -= cost
                return 0

            needed = cost - self.tokens
            return math.ceil(needed / self.refill_per_ms)


class RateLimiterRegistry:
    """Process-lifetime map of rate-limited keys to their buckets.

    Injected into request handling instead of living as a module global,
    so tests and separate apps get isolated buckets.
    """

    def __init__(self, clock: Callable[[], float] = _now_ms) -> None:
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get_bucket(self, key: str, config: TokenBucketConfig) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(config, clock=self._clock)
                self._buckets[key] = bucket
            return bucket

    def take(self, key: str, config: TokenBucketConfig, cost: float = 1) -> int:
        """Return 0 if ``cost`` was debited, else the milliseconds to wait."""
        return self.get_bucket(key, config).take(cost)

    async def wait_for_slot(
        self,
        key: str,
        config: TokenBucketConfig,
        cost: float = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> float:
        """Sleep until ``cost`` tokens could be debited; return total ms waited.

        Re-derives readiness after every sleep since concurrent callers may
        have spent the refilled tokens in the meantime.
        """
        waited = 0.0
        while True:
            wait_ms = self.take(key, config, cost)
            if wait_ms == 0:
                return waited
            waited += wait_ms
            await sleep(wait_ms / 1000.0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)
