"""Per-key token-bucket throttling.

Used to cap how many failed-login entries a single source can push into
the activity log.  State is in-memory and per process.  A bucket that has
refilled to capacity carries no information and is dropped once the
limiter holds ``max_keys`` buckets, so distinct sources cannot grow it
without bound.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict


@dataclass
class _TokenBucket:
    """Simple token-bucket rate limiter."""

    capacity: float
    refill_rate: float  # tokens per second
    tokens: float = 0.0
    last_refill: float = field(default_factory=time.monotonic)

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_consume(self, now: float, amount: float = 1.0) -> bool:
        self._refill(now)
        if self.tokens >= amount:
            self.tokens -= amount
            return True
        return False

    def is_full(self, now: float) -> bool:
        return self.tokens + (now - self.last_refill) * self.refill_rate >= self.capacity


class RateLimiter:
    """Allows at most ``max_per_minute`` events per key, refilled continuously."""

    def __init__(
        self,
        max_per_minute: int,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_minute = max_per_minute
        self.max_keys = max(1, max_keys)
        self._clock = clock
        self._buckets: Dict[str, _TokenBucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def allow(self, key: str) -> bool:
        """Consume one token for *key*; False when the key is over its limit."""
        if self.max_per_minute <= 0:
            return True  # throttling disabled
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self.max_keys:
                    self._evict(now)
                bucket = _TokenBucket(
                    capacity=float(self.max_per_minute),
                    refill_rate=self.max_per_minute / 60.0,
                    tokens=float(self.max_per_minute),
                    last_refill=now,
                )
                self._buckets[key] = bucket
            return bucket.try_consume(now)

    def _evict(self, now: float) -> None:
        """Drop refilled buckets; if all are still draining, drop the oldest."""
        idle = [k for k, b in self._buckets.items() if b.is_full(now)]
        for k in idle:
            del self._buckets[k]
        while len(self._buckets) >= self.max_keys:
            del self._buckets[next(iter(self._buckets))]

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
