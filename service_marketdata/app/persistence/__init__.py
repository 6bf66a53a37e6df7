"""
Persistence package: append-only history of normalized records.
"""

from .base import InMemoryPersistenceStore, PersistenceStore
from .postgres import PostgresPersistenceStore

__all__ = ["InMemoryPersistenceStore", "PersistenceStore", "PostgresPersistenceStore"]
