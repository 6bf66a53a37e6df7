"""
PostgreSQL persistence layer for canonical record history.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import AccessLayerException, ServiceError
from shared.logging import get_logger

from ..models.records import CanonicalRecord, as_utc, parse_iso, record_from_dict


class PostgresPersistenceStore:
    """Insert-only record history in PostgreSQL."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("marketdata.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise AccessLayerException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS canonical_records (
                    record_id BIGSERIAL PRIMARY KEY,
                    dataset_class VARCHAR(32) NOT NULL,
                    asset_id VARCHAR(64) NOT NULL,
                    currency VARCHAR(64) NOT NULL,
                    chart_interval VARCHAR(16),
                    source_provider VARCHAR(64) NOT NULL,
                    observed_from TIMESTAMP WITH TIME ZONE NOT NULL,
                    observed_to TIMESTAMP WITH TIME ZONE NOT NULL,
                    fetched_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    payload JSONB NOT NULL
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_series
                ON canonical_records(asset_id, currency, chart_interval, observed_from, observed_to);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_records_fetched ON canonical_records(fetched_at);
            """)

    async def append(self, record: CanonicalRecord) -> None:
        """Insert one record. Rows are never updated."""
        observed_from, observed_to = record.observed_span()
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO canonical_records (
                        dataset_class, asset_id, currency, chart_interval, source_provider,
                        observed_from, observed_to, fetched_at, payload
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                """,
                    record.dataset_class.value, record.asset_id, record.currency,
                    record.interval, record.source_provider, observed_from, observed_to,
                    parse_iso(record.fetched_at), json.dumps(record.to_dict())
                )
        except Exception as e:
            self.logger.error("Error appending record", asset_id=record.asset_id, error=str(e))
            raise ServiceError("Failed to persist record", {"asset_id": record.asset_id, "error": str(e)})

        self.logger.debug("Record appended", asset_id=record.asset_id, dataset_class=record.dataset_class.value)

    async def query_range(
        self,
        asset_id: str,
        currency: str,
        interval: Optional[str],
        start: datetime,
        end: datetime,
    ) -> List[CanonicalRecord]:
        """Records whose observation span intersects [start, end], oldest fetch first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT payload FROM canonical_records
                    WHERE asset_id = $1
                      AND currency = $2
                      AND chart_interval IS NOT DISTINCT FROM $3
                      AND observed_to >= $4
                      AND observed_from <= $5
                    ORDER BY fetched_at ASC, record_id ASC
                """, asset_id, currency, interval, as_utc(start), as_utc(end))
        except Exception as e:
            self.logger.error("Error querying records", asset_id=asset_id, error=str(e))
            raise ServiceError("Failed to query record history", {"asset_id": asset_id, "error": str(e)})

        return [self._row_to_record(row) for row in rows]

    def _row_to_record(self, row) -> CanonicalRecord:
        payload: Any = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return record_from_dict(payload)

    async def get_record_stats(self) -> Dict[str, Any]:
        """Get record statistics."""
        try:
            async with self.pool.acquire() as conn:
                stats = await conn.fetchrow("""
                    SELECT
                        COUNT(*) as total_records,
                        COUNT(DISTINCT asset_id) as unique_assets,
                        MAX(fetched_at) as last_fetched_at
                    FROM canonical_records
                """)

                return dict(stats)

        except Exception as e:
            self.logger.error("Error getting record stats", error=str(e))
            return {}

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
