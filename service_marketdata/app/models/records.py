"""
Canonical record shapes produced by normalization.

There is one frozen dataclass per dataset class. Records are immutable once
built and serialize to a JSON-friendly dict tagged with ``dataset_class``;
``record_from_dict`` is strict about that shape so unknown or missing fields
never travel silently between the cache, the history store and callers.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

from shared.errors import SchemaMismatch


class DatasetClass(str, Enum):
    """Dataset classes served by the pipeline."""

    SIMPLE_PRICE = "simple-price"
    MARKET_CHART = "market-chart"


Point = Tuple[int, float]


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO-8601 with millisecond precision."""
    return as_utc(dt).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp produced by ``format_iso``."""
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@dataclass(frozen=True)
class CanonicalRecord:
    """Fields shared by every canonical record."""

    asset_id: str
    currency: str
    source_provider: str
    fetched_at: str

    dataset_class: ClassVar[DatasetClass]

    @property
    def interval(self) -> Optional[str]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"dataset_class": self.dataset_class.value}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, tuple):
                value = [list(point) for point in value]
            payload[item.name] = value
        return payload

    def observed_span(self) -> Tuple[datetime, datetime]:
        """Time range the record describes, used for history range queries."""
        fetched = parse_iso(self.fetched_at)
        return fetched, fetched


@dataclass(frozen=True)
class SimplePriceRecord(CanonicalRecord):
    """Latest price of one asset in one currency."""

    price: float
    market_cap: Optional[float] = None
    volume_24h: Optional[float] = None
    change_24h_pct: Optional[float] = None
    last_updated_at: Optional[int] = None

    dataset_class: ClassVar[DatasetClass] = DatasetClass.SIMPLE_PRICE

    def observed_span(self) -> Tuple[datetime, datetime]:
        if self.last_updated_at is None:
            return super().observed_span()
        observed = datetime.fromtimestamp(self.last_updated_at, tz=timezone.utc)
        return observed, observed


@dataclass(frozen=True)
class MarketChartRecord(CanonicalRecord):
    """Price, market cap and volume series over a range."""

    chart_interval: str
    range_descriptor: str
    prices: Tuple[Point, ...]
    market_caps: Tuple[Point, ...] = ()
    total_volumes: Tuple[Point, ...] = ()

    dataset_class: ClassVar[DatasetClass] = DatasetClass.MARKET_CHART

    @property
    def interval(self) -> Optional[str]:
        return self.chart_interval

    def observed_span(self) -> Tuple[datetime, datetime]:
        if not self.prices:
            return super().observed_span()
        start = datetime.fromtimestamp(self.prices[0][0] / 1000.0, tz=timezone.utc)
        end = datetime.fromtimestamp(self.prices[-1][0] / 1000.0, tz=timezone.utc)
        return start, end


RECORD_TYPES: Dict[DatasetClass, Type[CanonicalRecord]] = {
    DatasetClass.SIMPLE_PRICE: SimplePriceRecord,
    DatasetClass.MARKET_CHART: MarketChartRecord,
}


def record_from_dict(payload: Dict[str, Any]) -> CanonicalRecord:
    """Rehydrate a record from its ``to_dict`` form.

    Raises ``SchemaMismatch`` on an unknown tag or on missing/unknown fields.
    """
    if not isinstance(payload, dict):
        raise SchemaMismatch("Record payload must be an object")

    data = dict(payload)
    tag = data.pop("dataset_class", None)
    try:
        record_type = RECORD_TYPES[DatasetClass(tag)]
    except (ValueError, KeyError):
        raise SchemaMismatch("Unknown dataset class", {"dataset_class": tag})

    known = {item.name: item for item in fields(record_type)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise SchemaMismatch("Unknown record fields", {"fields": unknown, "dataset_class": tag})

    kwargs: Dict[str, Any] = {}
    for name, value in data.items():
        if name in ("prices", "market_caps", "total_volumes"):
            value = _points(name, value)
        kwargs[name] = value

    try:
        return record_type(**kwargs)
    except TypeError as exc:
        raise SchemaMismatch("Missing record fields", {"error": str(exc), "dataset_class": tag})


def _points(name: str, value: Any) -> Tuple[Point, ...]:
    if not isinstance(value, (list, tuple)):
        raise SchemaMismatch("Series must be a list", {"field": name})
    points = []
    for point in value:
        if not isinstance(point, (list, tuple)) or len(point) != 2:
            raise SchemaMismatch("Series point must be a [timestamp, value] pair", {"field": name})
        points.append((int(point[0]), float(point[1])))
    return tuple(points)
