"""
Fetch coordination: single-flight leases over the cache, limiter and providers.
"""

from .fetch_coordinator import FetchCoordinator, QuotaPolicy
from .lease import FetchLease, LeaseState

__all__ = ["FetchCoordinator", "FetchLease", "LeaseState", "QuotaPolicy"]
