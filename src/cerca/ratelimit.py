"""In-memory token buckets keyed by (route, user-or-ip)."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from cerca.config import get_settings


@dataclass
class _Bucket:
    tokens: float
    updated: float


class TokenBucketLimiter:
    """Token buckets in an LRU map; the least recently used bucket is evicted past ``max_buckets``."""

    def __init__(self, max_buckets: int = 10_000, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_buckets = max_buckets
        self._clock = clock
        self._buckets: OrderedDict[tuple[str, str], _Bucket] = OrderedDict()
        self._lock = threading.Lock()

    def allow(self, route: str, key: str, rate: float, burst: float) -> tuple[bool, float]:
        """Take one token. Returns (allowed, seconds until the next token)."""
        now = self._clock()
        bucket_key = (route, key)
        with self._lock:
            bucket = self._buckets.get(bucket_key)
            if bucket is None:
                bucket = _Bucket(tokens=burst, updated=now)
                self._buckets[bucket_key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated)
                bucket.tokens = min(burst, bucket.tokens + elapsed * rate)
                bucket.updated = now
            self._buckets.move_to_end(bucket_key)
            while len(self._buckets) > self.max_buckets:
                self._buckets.popitem(last=False)

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0.0
            wait = (1.0 - bucket.tokens) / rate if rate > 0 else 60.0
            return False, wait

    def __len__(self) -> int:
        return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter: TokenBucketLimiter | None = None


def get_rate_limiter() -> TokenBucketLimiter:
    global _limiter  # noqa: PLW0603
    if _limiter is None:
        _limiter = TokenBucketLimiter(max_buckets=get_settings().rate_limit_max_buckets)
    return _limiter


def reset_rate_limiter() -> None:
    global _limiter  # noqa: PLW0603
    _limiter = None
