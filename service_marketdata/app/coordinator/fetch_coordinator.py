"""
Fetch coordinator: cache-first resolution with single-flight upstream fetches.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from shared.errors import (
    AccessLayerException,
    LeaseTimeout,
    RateLimitError,
    SchemaMismatch,
    ServiceError,
)
from shared.logging import get_logger, reset_caller_context, set_caller_context
from shared.metrics import MetricsCollector

from ..caching.tiered_cache import TieredCache
from ..models.records import CanonicalRecord, DatasetClass, format_iso
from ..models.requests import DataRequest
from ..normalization.normalizer import SchemaNormalizer
from ..persistence.base import PersistenceStore
from ..providers.registry import ProviderRegistry
from ..ratelimit.fixed_window import FixedWindowRateLimiter, limiter_key
from .lease import FetchLease, LeaseState


@dataclass(frozen=True)
class QuotaPolicy:
    """Upstream call budget per caller and provider."""

    window_size: int = 60
    max_calls: int = 30
    overrides: Dict[str, int] = field(default_factory=dict)

    def max_calls_for(self, provider: str) -> int:
        return self.overrides.get(provider, self.max_calls)


class FetchCoordinator:
    """Resolves data requests against the cache, fetching upstream at most once per key.

    Per key the coordinator moves ``idle -> in_flight -> idle``. The first
    caller to miss the cache opens a lease and starts the fetch in its own
    task; later callers for the same key join that lease and receive the same
    record or the same error. Callers wait with an optional timeout; timing
    out detaches only that caller. Nothing is cached or persisted unless the
    fetch and normalization both succeed.
    """

    def __init__(
        self,
        cache: TieredCache,
        rate_limiter: FixedWindowRateLimiter,
        providers: ProviderRegistry,
        persistence: PersistenceStore,
        *,
        normalizer: Optional[SchemaNormalizer] = None,
        quota: Optional[QuotaPolicy] = None,
        clock: Callable[[], float] = time.time,
        default_timeout: Optional[float] = None,
        default_caller: str = "anonymous",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.providers = providers
        self.persistence = persistence
        self.normalizer = normalizer or SchemaNormalizer()
        self.quota = quota or QuotaPolicy()
        self.default_timeout = default_timeout
        self.default_caller = default_caller
        self.metrics = metrics
        self.logger = get_logger("marketdata.coordinator")
        self._clock = clock
        self._leases: Dict[str, FetchLease] = {}
        self._stats: Dict[str, int] = {"cache_hits": 0, "fetches": 0, "joins": 0, "failures": 0, "timeouts": 0}

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
        """Entry point for the routing layer."""
        request = DataRequest.create(dataset_class, asset_id, currency, interval, range_descriptor)
        return await self.resolve_request(request, caller=caller, provider=provider, timeout=timeout)

    async def resolve_request(
        self,
        request: DataRequest,
        *,
        caller: Optional[str] = None,
        provider: Optional[str] = None,
        timeout: Optional[float] = None,
        bypass_cache: bool = False,
    ) -> CanonicalRecord:
        """Resolve one request.

        ``bypass_cache`` skips the cache fast path so a fetch always happens,
        still through the shared lease; the refresh trigger uses it.
        """
        caller = caller or self.default_caller
        token = set_caller_context(caller)
        try:
            return await self._resolve(request, caller, provider, timeout, bypass_cache)
        finally:
            reset_caller_context(token)

    async def _resolve(
        self,
        request: DataRequest,
        caller: str,
        provider: Optional[str],
        timeout: Optional[float],
        bypass_cache: bool,
    ) -> CanonicalRecord:
        key = request.cache_key()

        if not bypass_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                self._stats["cache_hits"] += 1
                return cached

        # No await between the lookup and the insert, so one lease per key.
        lease = self._leases.get(key)
        if lease is None:
            lease = FetchLease.open(key, self._clock())
            self._leases[key] = lease
            self._set_in_flight_gauge()
            lease.task = asyncio.create_task(
                self._run_fetch(lease, request, caller, provider, bypass_cache),
                name=f"fetch:{key}",
            )
            self.logger.debug("Lease opened", key=key)
        else:
            self._stats["joins"] += 1
            if self.metrics:
                self.metrics.increment_counter("single_flight_joins_total", dataset_class=request.dataset_class.value)
            self.logger.debug("Lease joined", key=key, waiters=lease.waiter_count + 1)

        return await self._wait(lease, timeout if timeout is not None else self.default_timeout)

    async def _wait(self, lease: FetchLease, timeout: Optional[float]) -> CanonicalRecord:
        lease.waiter_count += 1
        try:
            if timeout is None:
                return await asyncio.shield(lease.future)
            return await asyncio.wait_for(asyncio.shield(lease.future), timeout)
        except asyncio.TimeoutError:
            self._stats["timeouts"] += 1
            self.logger.warning("Waiter timed out on in-flight fetch", key=lease.key, timeout=timeout)
            raise LeaseTimeout(lease.key, timeout)
        finally:
            lease.waiter_count -= 1

    async def _run_fetch(
        self,
        lease: FetchLease,
        request: DataRequest,
        caller: str,
        provider: Optional[str],
        bypass_cache: bool,
    ) -> None:
        started = time.perf_counter()
        outcome = "success"
        try:
            record = await self._fetch_and_store(request, lease.key, caller, provider, bypass_cache)
        except AccessLayerException as exc:
            outcome = exc.code.lower()
            self._stats["failures"] += 1
            if self.metrics:
                self.metrics.record_error(exc.code)
            lease.future.set_exception(exc)
        except asyncio.CancelledError:
            outcome = "cancelled"
            lease.future.set_exception(ServiceError("Fetch cancelled", {"key": lease.key}))
            raise
        except Exception as exc:
            outcome = "service_error"
            self._stats["failures"] += 1
            if self.metrics:
                self.metrics.record_error("SERVICE_ERROR")
            self.logger.exception("Unexpected fetch failure", key=lease.key)
            lease.future.set_exception(
                ServiceError("Unexpected fetch failure", {"key": lease.key, "error": str(exc)})
            )
        else:
            lease.future.set_result(record)
        finally:
            lease.state = LeaseState.IDLE
            if self._leases.get(lease.key) is lease:
                del self._leases[lease.key]
            self._set_in_flight_gauge()
            if self.metrics:
                self.metrics.observe_histogram(
                    "fetch_duration_seconds",
                    time.perf_counter() - started,
                    dataset_class=request.dataset_class.value,
                    outcome=outcome,
                )
            self.logger.debug("Lease released", key=lease.key, outcome=outcome, waiters=lease.waiter_count)

    async def _fetch_and_store(
        self,
        request: DataRequest,
        key: str,
        caller: str,
        provider: Optional[str],
        bypass_cache: bool,
    ) -> CanonicalRecord:
        if not bypass_cache:
            # Another lease may have filled the cache between our miss and this lease.
            cached = await self.cache.get(key)
            if cached is not None:
                return cached

        adapter, client = self.providers.get(provider)
        provider_request = adapter.build_request(request, now=self._now())

        quota_key = limiter_key(caller, adapter.name)
        decision = await self.rate_limiter.allow(
            quota_key,
            self.quota.window_size,
            self.quota.max_calls_for(adapter.name),
        )
        if not decision.granted:
            if self.metrics:
                self.metrics.increment_counter("rate_limit_denials_total", provider=adapter.name)
            raise RateLimitError(
                f"Upstream quota exhausted for {quota_key}",
                {"limiter_key": quota_key, "limit": decision.limit, "key": key},
                retry_after=decision.retry_after,
            )

        self._stats["fetches"] += 1
        raw = await client.fetch(provider_request)

        schema = adapter.schema_for(request.dataset_class)
        try:
            record = self.normalizer.normalize(raw, schema, request, fetched_at=format_iso(self._now()))
        except SchemaMismatch as exc:
            if exc.caused_by_request:
                self.logger.info("Provider does not know requested data", key=key, schema=str(schema), details=exc.details)
            else:
                self.logger.warning("Upstream data quality issue", key=key, schema=str(schema), details=exc.details)
            raise

        ttl = self.cache.ttl_for(request.dataset_class)
        await self.persistence.append(record)
        try:
            await self.cache.set(key, record, ttl)
        except Exception:
            # Already persisted; the next miss refetches.
            self.logger.exception("Cache write failed after persist", key=key)
        self.logger.info("Fetched and stored record", key=key, provider=adapter.name)
        return record

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _set_in_flight_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("in_flight_fetches", len(self._leases))

    def in_flight_keys(self) -> List[str]:
        return sorted(self._leases)

    def lease_for(self, key: str) -> Optional[FetchLease]:
        return self._leases.get(key)

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "in_flight": len(self._leases),
            "waiters": sum(lease.waiter_count for lease in self._leases.values()),
        }
