"""
Upstream provider package.

Contains the HTTP client wrapper used for every provider call and the
adapters that translate data requests into provider-specific URLs. Retry
policy and failure classification live in the client; adapters stay pure.
"""

from .adapters import ADAPTERS, CoinCapAdapter, CoinGeckoAdapter, ProviderAdapter
from .client import ProviderClient, ProviderRequest
from .registry import ProviderRegistry

__all__ = [
    "ADAPTERS",
    "CoinCapAdapter",
    "CoinGeckoAdapter",
    "ProviderAdapter",
    "ProviderClient",
    "ProviderRegistry",
    "ProviderRequest",
]
