"""
Fetch leases: one per key while an upstream fetch is in flight.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class LeaseState(Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


def _retrieve_exception(future: asyncio.Future) -> None:
    # Every waiter may have timed out before the fetch failed.
    if not future.cancelled():
        future.exception()


@dataclass
class FetchLease:
    """Single-producer, multi-consumer broadcast of one fetch outcome."""

    key: str
    created_at: float
    future: asyncio.Future
    state: LeaseState = LeaseState.IN_FLIGHT
    waiter_count: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def open(cls, key: str, created_at: float) -> "FetchLease":
        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        return cls(key=key, created_at=created_at, future=future)

    @property
    def resolved(self) -> bool:
        return self.future.done()
