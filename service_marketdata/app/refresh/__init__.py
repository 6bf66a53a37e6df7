"""
Refresh package: the periodic trigger contract and its key-set implementation.
"""

from .key_loader import RefreshKeyLoader
from .trigger import KeySetRefresher, RefreshTrigger

__all__ = ["KeySetRefresher", "RefreshKeyLoader", "RefreshTrigger"]
