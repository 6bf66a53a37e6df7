"""
Cache entry stores backing the tiered cache.
"""

from __future__ import annotations

import json
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

import redis.asyncio as redis

from shared.logging import get_logger


Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload with the time it was stored and its TTL in seconds."""

    key: str
    payload: Dict[str, Any]
    stored_at: float
    ttl: float

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl

    def to_json(self) -> str:
        return json.dumps(
            {"key": self.key, "payload": self.payload, "stored_at": self.stored_at, "ttl": self.ttl},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, value: Any) -> "CacheEntry":
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        data = json.loads(value)
        return cls(
            key=data["key"],
            payload=data["payload"],
            stored_at=float(data["stored_at"]),
            ttl=float(data["ttl"]),
        )


class CacheStore(Protocol):
    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        ...

    async def put_entry(self, entry: CacheEntry) -> bool:
        ...

    async def delete(self, key: str) -> bool:
        ...


class InMemoryCacheStore:
    """Process-local store; expired entries are evicted when read."""

    def __init__(self, clock: Clock = time.time, max_entries: int = 10000):
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return None
            return entry

    async def put_entry(self, entry: CacheEntry) -> bool:
        with self._lock:
            if entry.key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_expired_or_oldest()
            self._entries[entry.key] = entry
        return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired_or_oldest(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = min(self._entries.values(), key=lambda item: item.stored_at)
            del self._entries[oldest.key]


class RedisCacheStore:
    """Shared store in Redis.

    Each write is a single ``SET ... PX`` so readers see either the previous
    entry or the new one. Read failures behave as misses; write failures are
    logged and reported as ``False``.
    """

    def __init__(self, redis_url: str, *, key_prefix: str = "marketdata:cache", clock: Clock = time.time):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("marketdata.cache.redis")
        self._clock = clock
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        try:
            redis_client = await self._get_redis()
            value = await redis_client.get(self._make_key(key))
        except Exception as exc:
            self.logger.error("Cache get error", key=key, error=str(exc))
            return None

        if not value:
            return None

        try:
            entry = CacheEntry.from_json(value)
        except (ValueError, KeyError, TypeError):
            self.logger.warning("Discarding malformed cache payload", key=key)
            return None

        if entry.is_expired(self._clock()):
            return None
        return entry

    async def put_entry(self, entry: CacheEntry) -> bool:
        remaining_ms = int(math.ceil((entry.expires_at - self._clock()) * 1000))
        if remaining_ms <= 0:
            return True

        try:
            redis_client = await self._get_redis()
            await redis_client.set(self._make_key(entry.key), entry.to_json(), px=remaining_ms)
            self.logger.debug("Cached value", key=entry.key, ttl=entry.ttl)
            return True
        except Exception as exc:
            self.logger.error("Cache set error", key=entry.key, error=str(exc))
            return False

    async def delete(self, key: str) -> bool:
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.delete(self._make_key(key)))
        except Exception as exc:
            self.logger.error("Cache delete error", key=key, error=str(exc))
            return False

    async def ping(self) -> bool:
        """Return True when Redis responds to a ping."""
        try:
            redis_client = await self._get_redis()
            return bool(await redis_client.ping())
        except Exception as exc:
            self.logger.error("Redis health check failed", error=str(exc))
            return False

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
