"""
Logical data requests and their cache keys.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from shared.errors import ValidationError

from .records import DatasetClass


_IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9._-]{1,64}$")
_RANGE_PATTERN = re.compile(r"^(max|[1-9][0-9]{0,4})$")

DEFAULT_CHART_INTERVAL = "daily"
CHART_INTERVALS = ("5m", "hourly", "daily")


@dataclass(frozen=True)
class DataRequest:
    """One logical request for a dataset.

    Always build through ``DataRequest.create`` so that identifiers are
    normalized the same way at every call site.
    """

    dataset_class: DatasetClass
    asset_id: str
    currency: str
    interval: Optional[str] = None
    range_descriptor: Optional[str] = None

    @classmethod
    def create(
        cls,
        dataset_class: Union[DatasetClass, str],
        asset_id: str,
        currency: str,
        interval: Optional[str] = None,
        range_descriptor: Optional[Union[str, int]] = None,
    ) -> "DataRequest":
        try:
            dataset = DatasetClass(dataset_class)
        except ValueError:
            raise ValidationError(
                "Unknown dataset class",
                {"dataset_class": str(dataset_class), "allowed": [item.value for item in DatasetClass]},
            )

        asset = normalize_identifier("asset_id", asset_id)
        ccy = normalize_identifier("currency", currency)

        if dataset is DatasetClass.SIMPLE_PRICE:
            if interval is not None or range_descriptor is not None:
                raise ValidationError(
                    "simple-price requests take no interval or range",
                    {"interval": interval, "range": range_descriptor},
                )
            return cls(dataset, asset, ccy)

        if range_descriptor is None:
            raise ValidationError("market-chart requests require a range", {"asset_id": asset})
        range_text = str(range_descriptor).strip().lower()
        if not _RANGE_PATTERN.match(range_text):
            raise ValidationError(
                "range must be a positive number of days or 'max'",
                {"range": range_descriptor},
            )

        chart_interval = normalize_identifier("interval", interval or DEFAULT_CHART_INTERVAL)
        if chart_interval not in CHART_INTERVALS:
            raise ValidationError(
                "Unsupported chart interval",
                {"interval": chart_interval, "allowed": list(CHART_INTERVALS)},
            )
        return cls(dataset, asset, ccy, chart_interval, range_text)

    def cache_key(self) -> str:
        """``<datasetClass>:<assetId>:<currency>[:<interval>:<range>]``."""
        parts = [self.dataset_class.value, self.asset_id, self.currency]
        if self.interval is not None:
            parts.append(self.interval)
        if self.range_descriptor is not None:
            parts.append(self.range_descriptor)
        return ":".join(parts)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DataRequest":
        """Build a request from a refresh key-set entry."""
        return cls.create(
            payload.get("dataset_class", ""),
            payload.get("asset_id", ""),
            payload.get("currency", ""),
            interval=payload.get("interval"),
            range_descriptor=payload.get("range"),
        )


def normalize_identifier(name: str, value: Any) -> str:
    """Lower-case and validate an asset id, currency or interval."""
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", {name: value})
    normalized = value.strip().lower()
    if not _IDENTIFIER_PATTERN.match(normalized):
        raise ValidationError(f"{name} must match pattern [a-z0-9._-]{{1,64}}", {name: value})
    return normalized
