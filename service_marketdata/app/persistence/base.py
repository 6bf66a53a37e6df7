"""
Persistence store contract and the in-memory implementation.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from shared.logging import get_logger

from ..models.records import CanonicalRecord, as_utc, parse_iso, record_from_dict


class PersistenceStore(Protocol):
    """Append-only history of canonical records."""

    async def append(self, record: CanonicalRecord) -> None:
        ...

    async def query_range(
        self,
        asset_id: str,
        currency: str,
        interval: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[CanonicalRecord]:
        ...


class InMemoryPersistenceStore:
    """Append-only rows held as serialized JSON, read back through ``record_from_dict``."""

    def __init__(self):
        self.logger = get_logger("marketdata.persistence.memory")
        self._lock = threading.Lock()
        self._rows: List[Tuple[str, str, Optional[str], datetime, datetime, str]] = []

    async def append(self, record: CanonicalRecord) -> None:
        observed_from, observed_to = record.observed_span()
        row = (
            record.asset_id,
            record.currency,
            record.interval,
            observed_from,
            observed_to,
            json.dumps(record.to_dict()),
        )
        with self._lock:
            self._rows.append(row)
        self.logger.debug("Record appended", asset_id=record.asset_id, dataset_class=record.dataset_class.value)

    async def query_range(
        self,
        asset_id: str,
        currency: str,
        interval: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[CanonicalRecord]:
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            rows = list(self._rows)

        records = [
            record_from_dict(json.loads(payload))
            for row_asset, row_ccy, row_interval, observed_from, observed_to, payload in rows
            if row_asset == asset_id
            and row_ccy == currency
            and row_interval == interval
            and observed_to >= start
            and observed_from <= end
        ]
        records.sort(key=lambda item: parse_iso(item.fetched_at))
        return records

    def __len__(self) -> int:
        return len(self._rows)
