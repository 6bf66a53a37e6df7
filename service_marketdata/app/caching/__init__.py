"""
Caching package.

Provides the tiered cache the coordinator reads through: a process-local
tier for latency and a shared Redis tier so every coordinator instance sees
the same entries. TTLs are set per dataset class.
"""

from .stores import CacheEntry, CacheStore, InMemoryCacheStore, RedisCacheStore
from .tiered_cache import CacheTTLPolicy, TieredCache

__all__ = [
    "CacheEntry",
    "CacheStore",
    "CacheTTLPolicy",
    "InMemoryCacheStore",
    "RedisCacheStore",
    "TieredCache",
]
