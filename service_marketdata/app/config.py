"""
Pipeline settings.
"""

from functools import lru_cache
from typing import Dict, Literal, Optional

from pydantic import Field

from shared.config import BaseConfig
from shared.retry import RetryConfig

from .caching.tiered_cache import CacheTTLPolicy
from .coordinator.fetch_coordinator import QuotaPolicy
from .models.records import DatasetClass


class PipelineSettings(BaseConfig):
    """Settings for the market data fetch pipeline."""

    service_name: str = Field(default="marketdata")

    # Backends: "memory" keeps state in-process (tests, single-node dev).
    cache_backend: Literal["memory", "redis"] = Field(default="redis")
    enable_local_cache: bool = Field(default=True)
    local_cache_max_entries: int = Field(default=10000)
    rate_limit_backend: Literal["memory", "redis"] = Field(default="redis")
    persistence_backend: Literal["memory", "postgres"] = Field(default="postgres")

    # Providers
    default_provider: str = Field(default="coingecko")
    coingecko_base_url: str = Field(default="https://api.coingecko.com/api/v3")
    coingecko_api_key: Optional[str] = Field(default=None)
    coincap_base_url: str = Field(default="https://api.coincap.io/v2")
    coincap_api_key: Optional[str] = Field(default=None)
    upstream_timeout_seconds: float = Field(default=10.0)

    # TTL policy
    simple_price_ttl_seconds: float = Field(default=120)
    market_chart_ttl_seconds: float = Field(default=3600)

    # Retry policy
    retry_max_attempts: int = Field(default=4)
    retry_base_delay: float = Field(default=0.5)
    retry_backoff_multiplier: float = Field(default=2.0)
    retry_max_delay: float = Field(default=8.0)
    retry_jitter: bool = Field(default=False)

    # Upstream quotas
    rate_limit_window_seconds: int = Field(default=60)
    rate_limit_max_calls: int = Field(default=30)
    rate_limit_overrides: Dict[str, int] = Field(default_factory=dict)

    # Coordination
    default_caller: str = Field(default="anonymous")
    fetch_wait_timeout_seconds: Optional[float] = Field(default=30.0)

    # Refresh trigger
    refresh_keys_file: Optional[str] = Field(default=None)
    refresh_concurrency: int = Field(default=4)
    refresh_caller: str = Field(default="refresh-trigger")

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )

    def ttl_policy(self) -> CacheTTLPolicy:
        return CacheTTLPolicy(
            ttls={
                DatasetClass.SIMPLE_PRICE: self.simple_price_ttl_seconds,
                DatasetClass.MARKET_CHART: self.market_chart_ttl_seconds,
            }
        )

    def quota_policy(self) -> QuotaPolicy:
        return QuotaPolicy(
            window_size=self.rate_limit_window_seconds,
            max_calls=self.rate_limit_max_calls,
            overrides=dict(self.rate_limit_overrides),
        )

    def provider_settings(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {
            "coingecko": {"base_url": self.coingecko_base_url, "api_key": self.coingecko_api_key},
            "coincap": {"base_url": self.coincap_base_url, "api_key": self.coincap_api_key},
        }


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    """Return process-wide settings loaded from the environment."""
    return PipelineSettings()
