"""
Rate limiting package.

Holds the fixed-window limiter that enforces per-caller, per-provider
upstream call budgets, plus its in-memory and Redis counter stores.
"""

from .fixed_window import (
    FixedWindowRateLimiter,
    InMemoryRateLimitStore,
    RateDecision,
    RateLimitStore,
    RedisRateLimitStore,
    limiter_key,
)

__all__ = [
    "FixedWindowRateLimiter",
    "InMemoryRateLimitStore",
    "RateDecision",
    "RateLimitStore",
    "RedisRateLimitStore",
    "limiter_key",
]
