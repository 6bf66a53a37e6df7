"""
Shared pytest fixtures: fake clock, recorded sleeps, a scripted upstream and
a coordinator factory wired entirely to in-memory stores.
"""

from typing import Optional

import pytest

from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from shared.test_helpers import FakeClock, RecordingSleep, ScriptedUpstream
from service_marketdata.app.caching import CacheTTLPolicy, InMemoryCacheStore, TieredCache
from service_marketdata.app.coordinator import FetchCoordinator, QuotaPolicy
from service_marketdata.app.models import DatasetClass
from service_marketdata.app.persistence import InMemoryPersistenceStore
from service_marketdata.app.providers import ADAPTERS, ProviderClient, ProviderRegistry
from service_marketdata.app.ratelimit import FixedWindowRateLimiter, InMemoryRateLimitStore


COINGECKO_URL = "https://coingecko.test"
COINCAP_URL = "https://coincap.test"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return RecordingSleep(clock)


@pytest.fixture
def upstream():
    return ScriptedUpstream()


@pytest.fixture
def metrics():
    return MetricsCollector("marketdata")


@pytest.fixture
def make_registry(sleep, upstream, metrics):
    """Provider registry whose clients talk to the scripted upstream."""

    def _make(retry: Optional[RetryConfig] = None) -> ProviderRegistry:
        transport = upstream.transport()
        registry = ProviderRegistry("coingecko")
        for name, base_url in (("coingecko", COINGECKO_URL), ("coincap", COINCAP_URL)):
            registry.register(
                ADAPTERS[name],
                ProviderClient(
                    name,
                    base_url,
                    retry_config=retry or RetryConfig(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0, max_delay=10.0),
                    transport=transport,
                    sleep=sleep,
                    metrics=metrics,
                ),
            )
        return registry

    return _make


@pytest.fixture
def make_coordinator(clock, metrics, make_registry):
    """Build a coordinator over in-memory stores and the scripted upstream."""

    def _make(
        *,
        max_calls: int = 30,
        window_size: int = 60,
        retry: Optional[RetryConfig] = None,
        ttl_policy: Optional[CacheTTLPolicy] = None,
        default_timeout: Optional[float] = None,
    ) -> FetchCoordinator:
        cache = TieredCache(
            local=InMemoryCacheStore(clock),
            ttl_policy=ttl_policy or CacheTTLPolicy({DatasetClass.SIMPLE_PRICE: 120, DatasetClass.MARKET_CHART: 3600}),
            clock=clock,
            metrics=metrics,
        )
        return FetchCoordinator(
            cache,
            FixedWindowRateLimiter(InMemoryRateLimitStore(clock), clock=clock, metrics=metrics),
            make_registry(retry),
            InMemoryPersistenceStore(),
            quota=QuotaPolicy(window_size=window_size, max_calls=max_calls),
            clock=clock,
            default_timeout=default_timeout,
            metrics=metrics,
        )

    return _make
