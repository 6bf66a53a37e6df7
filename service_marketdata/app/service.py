"""
Market data pipeline facade.

Assembles the cache, rate limiter, providers, persistence and coordinator
from ``PipelineSettings``. Any component can be injected instead, which is
how tests substitute in-memory stores and mock transports.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import SleepFunc

from .caching.stores import InMemoryCacheStore, RedisCacheStore
from .caching.tiered_cache import TieredCache
from .config import PipelineSettings, get_settings
from .coordinator.fetch_coordinator import FetchCoordinator
from .models.records import CanonicalRecord, DatasetClass, as_utc
from .models.requests import CHART_INTERVALS, normalize_identifier
from .persistence.base import InMemoryPersistenceStore, PersistenceStore
from .persistence.postgres import PostgresPersistenceStore
from .providers.adapters import ADAPTERS
from .providers.client import ProviderClient
from .providers.registry import ProviderRegistry
from .ratelimit.fixed_window import FixedWindowRateLimiter, InMemoryRateLimitStore, RedisRateLimitStore
from .refresh.key_loader import RefreshKeyLoader
from .refresh.trigger import KeySetRefresher


class MarketDataPipeline:
    """Owns the pipeline components and their lifecycle."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        cache: Optional[TieredCache] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        providers: Optional[ProviderRegistry] = None,
        persistence: Optional[PersistenceStore] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger(f"{self.settings.service_name}.pipeline")
        self.metrics = metrics
        if self.metrics is None and self.settings.enable_metrics:
            self.metrics = get_metrics_collector(self.settings.service_name)

        self._clock = clock
        self._closeables: List[Any] = []

        self.cache = cache or self._build_cache()
        self.rate_limiter = rate_limiter or self._build_rate_limiter()
        self.providers = providers or self._build_providers(sleep, transport)
        self.persistence = persistence or self._build_persistence()

        self.coordinator = FetchCoordinator(
            self.cache,
            self.rate_limiter,
            self.providers,
            self.persistence,
            quota=self.settings.quota_policy(),
            clock=clock,
            default_timeout=self.settings.fetch_wait_timeout_seconds,
            default_caller=self.settings.default_caller,
            metrics=self.metrics,
        )

    def _build_cache(self) -> TieredCache:
        local = None
        if self.settings.enable_local_cache or self.settings.cache_backend == "memory":
            local = InMemoryCacheStore(self._clock, max_entries=self.settings.local_cache_max_entries)

        shared = None
        if self.settings.cache_backend == "redis":
            shared = RedisCacheStore(self.settings.redis_url, clock=self._clock)
            self._closeables.append(shared)

        return TieredCache(
            local=local,
            shared=shared,
            ttl_policy=self.settings.ttl_policy(),
            clock=self._clock,
            metrics=self.metrics,
        )

    def _build_rate_limiter(self) -> FixedWindowRateLimiter:
        if self.settings.rate_limit_backend == "redis":
            store = RedisRateLimitStore(self.settings.redis_url)
            self._closeables.append(store)
        else:
            store = InMemoryRateLimitStore(self._clock)
        return FixedWindowRateLimiter(store, clock=self._clock, metrics=self.metrics)

    def _build_providers(
        self,
        sleep: SleepFunc,
        transport: Optional[httpx.AsyncBaseTransport],
    ) -> ProviderRegistry:
        registry = ProviderRegistry(self.settings.default_provider)
        for name, options in self.settings.provider_settings().items():
            adapter = ADAPTERS[name]
            client = ProviderClient(
                name,
                options["base_url"],
                retry_config=self.settings.retry_config(),
                timeout=self.settings.upstream_timeout_seconds,
                headers=adapter.auth_headers(options["api_key"]),
                transport=transport,
                sleep=sleep,
                metrics=self.metrics,
            )
            registry.register(adapter, client)
        return registry

    def _build_persistence(self) -> PersistenceStore:
        if self.settings.persistence_backend == "postgres":
            return PostgresPersistenceStore(self.settings.postgres_dsn)
        return InMemoryPersistenceStore()

    async def start(self, *, serve_metrics: bool = False) -> None:
        """Open connections that need an explicit start."""
        if isinstance(self.persistence, PostgresPersistenceStore):
            await self.persistence.start()
        if serve_metrics and self.metrics is not None:
            self.metrics.start_metrics_server(self.settings.metrics_port)
        self.logger.info(
            "Market data pipeline started",
            providers=self.providers.names(),
            default_provider=self.settings.default_provider,
            cache_backend=self.settings.cache_backend,
            persistence_backend=self.settings.persistence_backend,
        )

    async def close(self) -> None:
        """Close HTTP clients, Redis connections and the persistence pool."""
        await self.providers.close()
        for closeable in self._closeables:
            await closeable.close()
        if isinstance(self.persistence, PostgresPersistenceStore):
            await self.persistence.stop()

    async def resolve(
        self,
        dataset_class: Union[DatasetClass, str],
        asset_id: str,
        currency: str,
        interval: Optional[str] = None,
        range_descriptor: Optional[Union[str, int]] = None,
        *,
        caller: Optional[str] = None,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CanonicalRecord:
        return await self.coordinator.resolve(
            dataset_class,
            asset_id,
            currency,
            interval,
            range_descriptor,
            caller=caller,
            provider=provider,
            timeout=timeout,
        )

    async def query_history(
        self,
        asset_id: str,
        currency: str,
        start: datetime,
        end: datetime,
        *,
        interval: Optional[str] = None,
    ) -> List[CanonicalRecord]:
        """Persisted records for an asset; ``interval=None`` selects simple-price rows."""
        start, end = as_utc(start), as_utc(end)
        if start > end:
            raise ValidationError("start must not be later than end", {"start": str(start), "end": str(end)})
        asset = normalize_identifier("asset_id", asset_id)
        ccy = normalize_identifier("currency", currency)
        if interval is not None:
            interval = normalize_identifier("interval", interval)
            if interval not in CHART_INTERVALS:
                raise ValidationError("Unsupported chart interval", {"interval": interval})
        return await self.persistence.query_range(asset, ccy, interval, start, end)

    def refresher(self, keys_file: Optional[Union[str, Path]] = None) -> KeySetRefresher:
        loader = RefreshKeyLoader(keys_file or self.settings.refresh_keys_file)
        return KeySetRefresher(
            self.coordinator,
            loader.requests(),
            caller=self.settings.refresh_caller,
            concurrency=self.settings.refresh_concurrency,
            timeout=self.settings.fetch_wait_timeout_seconds,
        )

    async def refresh(self, keys_file: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
        """Run one refresh pass over the configured key set."""
        return await self.refresher(keys_file).run_once()

    async def health(self) -> Dict[str, Any]:
        dependencies: Dict[str, str] = {}
        if isinstance(self.cache.shared, RedisCacheStore):
            dependencies["redis"] = "ok" if await self.cache.shared.ping() else "error"
        if isinstance(self.persistence, PostgresPersistenceStore):
            dependencies["postgres"] = "ok" if await self.persistence.health_check() else "error"

        return {
            "status": "ok" if all(value == "ok" for value in dependencies.values()) else "error",
            "dependencies": dependencies,
            "cache": self.cache.stats(),
            "coordinator": self.coordinator.stats(),
        }
