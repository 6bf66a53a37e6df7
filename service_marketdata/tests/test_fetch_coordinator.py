"""
Unit tests for the fetch coordinator: cache-first resolution and single-flight fetches.
"""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_marketdata.app.caching import CacheTTLPolicy
from service_marketdata.app.models import DatasetClass, MarketChartRecord, SimplePriceRecord
from shared.errors import (
    LeaseTimeout,
    PermanentUpstreamError,
    RateLimitError,
    SchemaMismatch,
    ServiceError,
    ValidationError,
)
from shared.logging import caller_id_var
from shared.test_helpers import MarketDataFactory


PRICE_KEY = "simple-price:bitcoin:usd"


async def _until(predicate, attempts=1000):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class TestResolve:
    """Test cases for cache-first resolution."""

    @pytest.mark.asyncio
    async def test_simple_price_scenario(self, make_coordinator, upstream):
        """Test a cold simple-price request fetches, persists and caches with the dataset TTL."""
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price(asset="btc"))
        coordinator = make_coordinator()

        record = await coordinator.resolve("simple-price", "BTC", "USD")

        assert isinstance(record, SimplePriceRecord)
        assert record.asset_id == "btc"
        assert record.price == 67000.5
        assert record.fetched_at == "2023-11-14T22:13:20.000Z"

        entry = await coordinator.cache.local.get_entry("simple-price:btc:usd")
        assert entry.ttl == 120
        assert len(coordinator.persistence) == 1

    @pytest.mark.asyncio
    async def test_market_chart_scenario_with_transient_failures(self, make_coordinator, upstream, sleep):
        """Test two 503s are retried with two backoff delays before the record is stored."""
        upstream.queue(
            "/coins/eth/market_chart",
            httpx.Response(503),
            httpx.Response(503),
            MarketDataFactory.coingecko_market_chart(),
        )
        coordinator = make_coordinator()

        record = await coordinator.resolve("market-chart", "ETH", "USD", "daily", "30")

        assert isinstance(record, MarketChartRecord)
        assert sleep.delays == [1.0, 2.0]
        assert len(upstream.calls) == 3
        assert record.prices[0] == (1_699_833_600_000, 1780.25)

        entry = await coordinator.cache.local.get_entry("market-chart:eth:usd:daily:30")
        assert entry.ttl == 3600
        assert len(coordinator.persistence) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()

        first = await coordinator.resolve("simple-price", "bitcoin", "usd")
        second = await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert first == second
        assert len(upstream.calls) == 1
        assert coordinator.stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, make_coordinator, upstream, clock):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()

        await coordinator.resolve("simple-price", "bitcoin", "usd")
        clock.advance(120)
        await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert len(upstream.calls) == 2
        assert len(coordinator.persistence) == 2

    @pytest.mark.asyncio
    async def test_invalid_request_rejected_before_lease(self, make_coordinator, upstream):
        coordinator = make_coordinator()

        with pytest.raises(ValidationError):
            await coordinator.resolve("simple-price", "", "usd")

        assert coordinator.in_flight_keys() == []
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_unknown_provider(self, make_coordinator, upstream):
        coordinator = make_coordinator()

        with pytest.raises(ValidationError):
            await coordinator.resolve("simple-price", "bitcoin", "usd", provider="kraken")
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_alternate_provider(self, make_coordinator, upstream):
        upstream.queue("/assets/bitcoin", MarketDataFactory.coincap_asset())
        coordinator = make_coordinator()

        record = await coordinator.resolve("simple-price", "bitcoin", "usd", provider="coincap")

        assert record.source_provider == "coincap"

    @pytest.mark.asyncio
    async def test_unservable_granularity_rejected_before_quota(self, make_coordinator, upstream):
        coordinator = make_coordinator(max_calls=1)

        with pytest.raises(ValidationError):
            await coordinator.resolve("market-chart", "bitcoin", "usd", "5m", "30")

        assert upstream.calls == []
        assert await coordinator.cache.get("market-chart:bitcoin:usd:5m:30") is None
        assert len(coordinator.persistence) == 0

        upstream.queue("/coins/bitcoin/market_chart", MarketDataFactory.coingecko_market_chart())
        record = await coordinator.resolve("market-chart", "bitcoin", "usd", "hourly", "7")
        assert record.chart_interval == "hourly"

    @pytest.mark.asyncio
    async def test_caller_context_restored_after_resolve(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()

        await coordinator.resolve("simple-price", "bitcoin", "usd", caller="alice")

        assert caller_id_var.get() is None


class TestSingleFlight:
    """Test cases for lease sharing between concurrent callers."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, make_coordinator, upstream, metrics):
        """Test N concurrent misses produce exactly one upstream call and one shared record."""
        upstream.gate = asyncio.Event()
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()

        tasks = [
            asyncio.create_task(coordinator.resolve("simple-price", "bitcoin", "usd", caller=f"caller-{i}"))
            for i in range(10)
        ]
        await _until(lambda: len(upstream.calls) == 1)

        assert coordinator.in_flight_keys() == [PRICE_KEY]
        assert coordinator.lease_for(PRICE_KEY).waiter_count == 10

        upstream.gate.set()
        results = await asyncio.gather(*tasks)

        assert len(upstream.calls) == 1
        assert all(result is results[0] for result in results)
        assert coordinator.in_flight_keys() == []
        assert coordinator.stats()["joins"] == 9
        assert metrics.sample("single_flight_joins_total", dataset_class="simple-price") == 9.0
        assert len(coordinator.persistence) == 1

    @pytest.mark.asyncio
    async def test_joins_do_not_spend_quota(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator(max_calls=1)

        results = await asyncio.gather(
            *(coordinator.resolve("simple-price", "bitcoin", "usd", caller="alice") for _ in range(5))
        )

        assert len(results) == 5
        assert len(upstream.calls) == 1

    @pytest.mark.asyncio
    async def test_distinct_keys_fetch_independently(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        upstream.queue("/coins/bitcoin/market_chart", MarketDataFactory.coingecko_market_chart())
        coordinator = make_coordinator()

        await asyncio.gather(
            coordinator.resolve("simple-price", "bitcoin", "usd"),
            coordinator.resolve("market-chart", "bitcoin", "usd", "daily", "30"),
        )

        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_broadcast_to_all_waiters(self, make_coordinator, upstream, metrics):
        """Test a denied lease fails every waiter with RateLimitError and calls nothing upstream."""
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator(max_calls=0)

        results = await asyncio.gather(
            *(coordinator.resolve("simple-price", "bitcoin", "usd") for _ in range(4)),
            return_exceptions=True,
        )

        assert all(isinstance(result, RateLimitError) for result in results)
        assert len({id(result) for result in results}) == 1
        assert 0 < results[0].retry_after <= 60
        assert upstream.calls == []
        assert coordinator.in_flight_keys() == []
        assert metrics.sample("rate_limit_denials_total", provider="coingecko") == 1.0

    @pytest.mark.asyncio
    async def test_failure_releases_lease(self, make_coordinator, upstream):
        """Test a failed fetch is not cached and the next request starts a new fetch."""
        upstream.queue("/simple/price", httpx.Response(404, json={"error": "coin not found"}))
        coordinator = make_coordinator()

        results = await asyncio.gather(
            *(coordinator.resolve("simple-price", "bitcoin", "usd") for _ in range(3)),
            return_exceptions=True,
        )
        assert all(isinstance(result, PermanentUpstreamError) for result in results)
        assert coordinator.in_flight_keys() == []

        upstream.scripts["/simple/price"] = [MarketDataFactory.coingecko_simple_price()]
        record = await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert record.price == 67000.5
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_waiter_timeout_leaves_fetch_running(self, make_coordinator, upstream):
        """Test a timed-out waiter detaches without cancelling the fetch for others."""
        upstream.gate = asyncio.Event()
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()

        patient = asyncio.create_task(coordinator.resolve("simple-price", "bitcoin", "usd"))
        with pytest.raises(LeaseTimeout) as exc_info:
            await coordinator.resolve("simple-price", "bitcoin", "usd", timeout=0.05)

        assert exc_info.value.key == PRICE_KEY
        lease = coordinator.lease_for(PRICE_KEY)
        assert lease is not None
        assert not lease.task.cancelled()

        upstream.gate.set()
        record = await patient

        assert record.price == 67000.5
        assert len(upstream.calls) == 1
        assert await coordinator.cache.get(PRICE_KEY) == record
        assert coordinator.stats()["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_all_waiters_timing_out_still_stores(self, make_coordinator, upstream):
        upstream.gate = asyncio.Event()
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator(default_timeout=0.01)

        with pytest.raises(LeaseTimeout):
            await coordinator.resolve("simple-price", "bitcoin", "usd")

        lease = coordinator.lease_for(PRICE_KEY)
        upstream.gate.set()
        await lease.task

        assert await coordinator.cache.get(PRICE_KEY) is not None
        assert coordinator.in_flight_keys() == []


class TestFailureAtomicity:
    """Test cases for nothing being stored on failure."""

    @pytest.mark.asyncio
    async def test_schema_mismatch_stores_nothing(self, make_coordinator, upstream):
        upstream.queue("/simple/price", {"bitcoin": {"usd": "not-a-number"}})
        coordinator = make_coordinator()

        with pytest.raises(SchemaMismatch):
            await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert await coordinator.cache.get(PRICE_KEY) is None
        assert len(coordinator.persistence) == 0

    @pytest.mark.asyncio
    async def test_missing_required_field_stores_nothing(self, make_coordinator, upstream):
        raw = MarketDataFactory.coingecko_market_chart()
        del raw["total_volumes"]
        upstream.queue("/coins/ethereum/market_chart", raw)
        coordinator = make_coordinator()

        with pytest.raises(SchemaMismatch) as exc_info:
            await coordinator.resolve("market-chart", "ethereum", "usd", "daily", "30")

        assert exc_info.value.details["field"] == "total_volumes"
        assert exc_info.value.client_error is False
        assert await coordinator.cache.get("market-chart:ethereum:usd:daily:30") is None
        assert len(coordinator.persistence) == 0

    @pytest.mark.asyncio
    async def test_persistence_failure_skips_cache(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()
        coordinator.persistence = AsyncMock()
        coordinator.persistence.append.side_effect = ServiceError("Failed to persist record")

        with pytest.raises(ServiceError):
            await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert await coordinator.cache.get(PRICE_KEY) is None

    @pytest.mark.asyncio
    async def test_cache_write_failure_after_persist_returns_record(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()
        coordinator.cache.set = AsyncMock(side_effect=RuntimeError("redis down"))

        record = await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert record.price == 67000.5
        assert len(coordinator.persistence) == 1
        assert coordinator.in_flight_keys() == []

    @pytest.mark.asyncio
    async def test_missing_ttl_fails_before_persist(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator(ttl_policy=CacheTTLPolicy({DatasetClass.MARKET_CHART: 3600}))

        with pytest.raises(ServiceError):
            await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert len(coordinator.persistence) == 0
        assert await coordinator.cache.get(PRICE_KEY) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_service_error(self, make_coordinator, upstream):
        upstream.queue("/simple/price", MarketDataFactory.coingecko_simple_price())
        coordinator = make_coordinator()
        coordinator.normalizer = MagicMock()
        coordinator.normalizer.normalize.side_effect = KeyError("boom")

        with pytest.raises(ServiceError) as exc_info:
            await coordinator.resolve("simple-price", "bitcoin", "usd")

        assert exc_info.value.details["key"] == PRICE_KEY
        assert coordinator.in_flight_keys() == []
