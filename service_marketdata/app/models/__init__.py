"""
Canonical records and request types shared by every pipeline component.
"""

from .records import (
    CanonicalRecord,
    DatasetClass,
    MarketChartRecord,
    SimplePriceRecord,
    as_utc,
    format_iso,
    parse_iso,
    record_from_dict,
)
from .requests import DataRequest

__all__ = [
    "as_utc",
    "CanonicalRecord",
    "DataRequest",
    "DatasetClass",
    "MarketChartRecord",
    "SimplePriceRecord",
    "format_iso",
    "parse_iso",
    "record_from_dict",
]
