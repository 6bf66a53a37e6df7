"""
Fixed-window rate limiter gating upstream provider calls.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from shared.errors import ServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector


Clock = Callable[[], float]


@dataclass(frozen=True)
class RateDecision:
    """Outcome of one ``allow`` call."""

    granted: bool
    retry_after: float
    count: int
    limit: int
    window_start: int


class RateLimitStore(Protocol):
    async def increment(self, counter_key: str, ttl_seconds: float) -> int:
        """Atomically increment ``counter_key``, setting its expiry on the first increment."""
        ...


class InMemoryRateLimitStore:
    """Process-local counters. The lock makes increment-with-expiry atomic."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    async def increment(self, counter_key: str, ttl_seconds: float) -> int:
        with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(counter_key, (0, 0.0))
            if count == 0 or now >= expires_at:
                count, expires_at = 0, now + ttl_seconds
            count += 1
            self._counters[counter_key] = (count, expires_at)
            self._purge(now)
            return count

    def _purge(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if now >= expires_at]
        for key in expired:
            del self._counters[key]


class RedisRateLimitStore:
    """Shared counters in Redis, advanced by a single server-side script."""

    INCREMENT_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return current
""".strip()

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    async def increment(self, counter_key: str, ttl_seconds: float) -> int:
        redis_client = await self._get_redis()
        result = await redis_client.eval(self.INCREMENT_SCRIPT, 1, counter_key, int(math.ceil(ttl_seconds * 1000)))
        return int(result)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def limiter_key(caller: str, provider: str) -> str:
    """Limiter identity: quota is spent per caller per provider."""
    return f"{caller}:{provider}"


class FixedWindowRateLimiter:
    """Counts calls per limiter key within epoch-aligned windows.

    The counter for a window is named after the window start, so a new
    window is a new counter rather than a reset of the old one. Granting is
    decided from the value returned by one atomic increment, which is what
    keeps concurrent callers from overrunning ``max_count``.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        clock: Clock = time.time,
        metrics: Optional[MetricsCollector] = None,
        key_prefix: str = "rate_limit",
    ):
        self.store = store
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.logger = get_logger("marketdata.rate_limiter")
        self._clock = clock

    def _make_key(self, limiter_key: str, window_start: int) -> str:
        """Generate rate limit counter key."""
        return f"{self.key_prefix}:{limiter_key}:{window_start}"

    async def allow(self, limiter_key: str, window_size: int, max_count: int) -> RateDecision:
        if window_size < 1:
            raise ValueError("window_size must be at least one second")
        if max_count < 0:
            raise ValueError("max_count must be non-negative")

        now = self._clock()
        window_start = int(math.floor(now / window_size) * window_size)
        key = self._make_key(limiter_key, window_start)

        try:
            count = await self.store.increment(key, window_size)
        except Exception as exc:
            self.logger.error("Rate limit store error", limiter_key=limiter_key, error=str(exc))
            raise ServiceError("Rate limiter unavailable", {"limiter_key": limiter_key, "error": str(exc)})

        if count <= max_count:
            return RateDecision(True, 0.0, count, max_count, window_start)

        retry_after = max(0.0, window_start + window_size - now)
        self.logger.warning(
            "Rate limit exceeded",
            limiter_key=limiter_key,
            current_count=count,
            limit=max_count,
            retry_after=retry_after,
        )
        return RateDecision(False, retry_after, count, max_count, window_start)
