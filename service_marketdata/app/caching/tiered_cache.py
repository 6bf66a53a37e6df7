"""
Tiered read-through cache with a per-dataset TTL policy.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from shared.errors import SchemaMismatch
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models.records import CanonicalRecord, DatasetClass, record_from_dict
from .stores import CacheEntry, CacheStore, Clock


DEFAULT_SIMPLE_PRICE_TTL = 120
DEFAULT_MARKET_CHART_TTL = 3600


@dataclass(frozen=True)
class CacheTTLPolicy:
    """TTL in seconds per dataset class."""

    ttls: Dict[DatasetClass, float] = field(
        default_factory=lambda: {
            DatasetClass.SIMPLE_PRICE: DEFAULT_SIMPLE_PRICE_TTL,
            DatasetClass.MARKET_CHART: DEFAULT_MARKET_CHART_TTL,
        }
    )

    def ttl_for(self, dataset_class: DatasetClass) -> float:
        try:
            return self.ttls[dataset_class]
        except KeyError:
            raise ValueError(f"No TTL configured for {dataset_class.value}")


class TieredCache:
    """Local in-process tier in front of an optional shared tier.

    Reads check the local tier first, then the shared tier, back-filling the
    local tier with the shared entry so its expiry stays anchored to the
    original write. Writes go to the shared tier first. An entry whose age
    has reached its TTL reads as a miss.
    """

    def __init__(
        self,
        *,
        local: Optional[CacheStore] = None,
        shared: Optional[CacheStore] = None,
        ttl_policy: Optional[CacheTTLPolicy] = None,
        clock: Clock = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        if local is None and shared is None:
            raise ValueError("TieredCache needs at least one tier")
        self.local = local
        self.shared = shared
        self.ttl_policy = ttl_policy or CacheTTLPolicy()
        self.metrics = metrics
        self.logger = get_logger("marketdata.cache")
        self._clock = clock
        self._stats: Dict[str, int] = {"local_hits": 0, "shared_hits": 0, "misses": 0, "writes": 0, "write_failures": 0}

    def ttl_for(self, dataset_class: DatasetClass) -> float:
        return self.ttl_policy.ttl_for(dataset_class)

    def _tiers(self) -> List[Tuple[str, CacheStore]]:
        tiers = []
        if self.local is not None:
            tiers.append(("local", self.local))
        if self.shared is not None:
            tiers.append(("shared", self.shared))
        return tiers

    async def get(self, key: str) -> Optional[CanonicalRecord]:
        """Return the cached record for ``key``, or None on a miss or expiry."""
        for tier, store in self._tiers():
            entry = await store.get_entry(key)
            if entry is None or entry.is_expired(self._clock()):
                continue

            record = self._decode(entry)
            if record is None:
                await store.delete(key)
                continue

            if tier == "shared" and self.local is not None:
                await self.local.put_entry(entry)

            self._stats[f"{tier}_hits"] += 1
            self._record("cache_hits_total", tier)
            self.logger.debug("Cache hit", key=key, tier=tier)
            return record

        self._stats["misses"] += 1
        self._record("cache_misses_total", "all")
        return None

    async def set(self, key: str, record: CanonicalRecord, ttl: Optional[float] = None) -> bool:
        """Store ``record`` under ``key``, replacing any previous entry."""
        entry = CacheEntry(
            key=key,
            payload=record.to_dict(),
            stored_at=self._clock(),
            ttl=ttl if ttl is not None else self.ttl_for(record.dataset_class),
        )

        success = True
        # The local tier is only written once the shared write succeeded.
        if self.shared is not None:
            success = await self.shared.put_entry(entry)
        if success and self.local is not None:
            success = await self.local.put_entry(entry)

        self._stats["writes"] += 1
        if not success:
            self._stats["write_failures"] += 1
            self.logger.warning("Cache write failed", key=key)
        return success

    async def invalidate(self, key: str) -> None:
        for _, store in self._tiers():
            await store.delete(key)

    def stats(self) -> Dict[str, Any]:
        lookups = self._stats["local_hits"] + self._stats["shared_hits"] + self._stats["misses"]
        hits = lookups - self._stats["misses"]
        return {
            **self._stats,
            "tiers": [tier for tier, _ in self._tiers()],
            "hit_ratio": hits / max(1, lookups),
        }

    def _decode(self, entry: CacheEntry) -> Optional[CanonicalRecord]:
        try:
            return record_from_dict(entry.payload)
        except SchemaMismatch as exc:
            self.logger.warning("Discarding malformed cache payload", key=entry.key, error=exc.message)
            return None

    def _record(self, metric: str, tier: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric, tier=tier)
