"""
Schema normalizer: raw provider payloads to canonical records.

Normalization is pure. The same raw payload, schema and request always give
the same record or the same ``SchemaMismatch``; ``fetched_at`` is passed in
rather than read from a clock. Mappings are looked up by provider schema in
an explicit table.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.errors import SchemaMismatch

from ..models.records import CanonicalRecord, MarketChartRecord, Point, SimplePriceRecord
from ..models.requests import DataRequest
from .schemas import (
    COINCAP_ASSET,
    COINCAP_HISTORY,
    COINGECKO_MARKET_CHART,
    COINGECKO_SIMPLE_PRICE,
    ProviderSchema,
)


Mapping = Callable[[Any, DataRequest, str, str], CanonicalRecord]


def _number(value: Any, field: str, schema: ProviderSchema) -> float:
    """Coerce a provider number, accepting numeric strings."""
    if isinstance(value, bool):
        raise SchemaMismatch("Expected a number", {"field": field, "schema": str(schema)})
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            raise SchemaMismatch("Expected a numeric string", {"field": field, "schema": str(schema)})
    else:
        raise SchemaMismatch("Expected a number", {"field": field, "schema": str(schema)})

    if math.isnan(number) or math.isinf(number):
        raise SchemaMismatch("Number is not finite", {"field": field, "schema": str(schema)})
    return number


def _optional_number(value: Any, field: str, schema: ProviderSchema) -> Optional[float]:
    if value is None:
        return None
    return _number(value, field, schema)


def _object(value: Any, field: str, schema: ProviderSchema) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise SchemaMismatch("Expected an object", {"field": field, "schema": str(schema)})
    return value


def _series(raw: Dict[str, Any], field: str, schema: ProviderSchema, *, required_points: bool) -> Tuple[Point, ...]:
    if field not in raw:
        raise SchemaMismatch("Missing required field", {"field": field, "schema": str(schema)})
    values = raw[field]
    if not isinstance(values, list):
        raise SchemaMismatch("Expected a list of points", {"field": field, "schema": str(schema)})
    if required_points and not values:
        raise SchemaMismatch("Series is empty", {"field": field, "schema": str(schema)})

    points: List[Point] = []
    for point in values:
        if not isinstance(point, list) or len(point) != 2:
            raise SchemaMismatch("Expected [timestamp, value] pairs", {"field": field, "schema": str(schema)})
        timestamp = _number(point[0], f"{field}.timestamp", schema)
        points.append((int(timestamp), _number(point[1], f"{field}.value", schema)))

    points.sort(key=lambda item: item[0])
    return tuple(points)


def _coingecko_simple_price(raw: Any, request: DataRequest, provider: str, fetched_at: str) -> CanonicalRecord:
    schema = COINGECKO_SIMPLE_PRICE
    body = _object(raw, "$", schema)
    if request.asset_id not in body:
        raise SchemaMismatch(
            "Asset missing from provider response",
            {"asset_id": request.asset_id, "schema": str(schema)},
            caused_by_request=True,
        )
    entry = _object(body[request.asset_id], request.asset_id, schema)
    ccy = request.currency
    if ccy not in entry:
        raise SchemaMismatch(
            "Currency missing from provider response",
            {"currency": ccy, "schema": str(schema)},
            caused_by_request=True,
        )

    last_updated = entry.get("last_updated_at")
    return SimplePriceRecord(
        asset_id=request.asset_id,
        currency=ccy,
        source_provider=provider,
        fetched_at=fetched_at,
        price=_number(entry[ccy], ccy, schema),
        market_cap=_optional_number(entry.get(f"{ccy}_market_cap"), f"{ccy}_market_cap", schema),
        volume_24h=_optional_number(entry.get(f"{ccy}_24h_vol"), f"{ccy}_24h_vol", schema),
        change_24h_pct=_optional_number(entry.get(f"{ccy}_24h_change"), f"{ccy}_24h_change", schema),
        last_updated_at=int(_number(last_updated, "last_updated_at", schema)) if last_updated is not None else None,
    )


def _coingecko_market_chart(raw: Any, request: DataRequest, provider: str, fetched_at: str) -> CanonicalRecord:
    schema = COINGECKO_MARKET_CHART
    body = _object(raw, "$", schema)
    return MarketChartRecord(
        asset_id=request.asset_id,
        currency=request.currency,
        source_provider=provider,
        fetched_at=fetched_at,
        chart_interval=request.interval,
        range_descriptor=request.range_descriptor,
        prices=_series(body, "prices", schema, required_points=True),
        market_caps=_series(body, "market_caps", schema, required_points=False),
        total_volumes=_series(body, "total_volumes", schema, required_points=False),
    )


def _coincap_field(prefix: str, currency: str, suffix: str = "") -> str:
    # CoinCap camel-cases the quote currency: priceUsd, volumeUsd24Hr.
    return f"{prefix}{currency.capitalize()}{suffix}"


def _coincap_asset(raw: Any, request: DataRequest, provider: str, fetched_at: str) -> CanonicalRecord:
    schema = COINCAP_ASSET
    body = _object(raw, "$", schema)
    if "data" not in body:
        raise SchemaMismatch("Missing required field", {"field": "data", "schema": str(schema)})
    data = _object(body["data"], "data", schema)
    if data.get("id") is None:
        raise SchemaMismatch("Missing required field", {"field": "data.id", "schema": str(schema)})
    if data["id"] != request.asset_id:
        raise SchemaMismatch(
            "Provider returned a different asset",
            {"asset_id": request.asset_id, "returned": data["id"], "schema": str(schema)},
        )

    price_field = _coincap_field("price", request.currency)
    if data.get(price_field) is None:
        raise SchemaMismatch(
            "Currency missing from provider response",
            {"currency": request.currency, "field": price_field, "schema": str(schema)},
            caused_by_request=True,
        )

    timestamp = body.get("timestamp")
    cap_field = _coincap_field("marketCap", request.currency)
    volume_field = _coincap_field("volume", request.currency, "24Hr")
    return SimplePriceRecord(
        asset_id=request.asset_id,
        currency=request.currency,
        source_provider=provider,
        fetched_at=fetched_at,
        price=_number(data[price_field], price_field, schema),
        market_cap=_optional_number(data.get(cap_field), cap_field, schema),
        volume_24h=_optional_number(data.get(volume_field), volume_field, schema),
        change_24h_pct=_optional_number(data.get("changePercent24Hr"), "changePercent24Hr", schema),
        last_updated_at=int(_number(timestamp, "timestamp", schema)) // 1000 if timestamp is not None else None,
    )


def _coincap_history(raw: Any, request: DataRequest, provider: str, fetched_at: str) -> CanonicalRecord:
    schema = COINCAP_HISTORY
    body = _object(raw, "$", schema)
    rows = body.get("data")
    if not isinstance(rows, list) or not rows:
        raise SchemaMismatch("Expected a non-empty data list", {"field": "data", "schema": str(schema)})

    price_field = _coincap_field("price", request.currency)
    points: List[Point] = []
    for row in rows:
        row = _object(row, "data[]", schema)
        if price_field not in row or "time" not in row:
            raise SchemaMismatch(
                "Missing required field",
                {"field": price_field if price_field not in row else "time", "schema": str(schema)},
            )
        points.append((int(_number(row["time"], "time", schema)), _number(row[price_field], price_field, schema)))
    points.sort(key=lambda item: item[0])

    return MarketChartRecord(
        asset_id=request.asset_id,
        currency=request.currency,
        source_provider=provider,
        fetched_at=fetched_at,
        chart_interval=request.interval,
        range_descriptor=request.range_descriptor,
        prices=tuple(points),
    )


DEFAULT_MAPPINGS: Dict[ProviderSchema, Mapping] = {
    COINGECKO_SIMPLE_PRICE: _coingecko_simple_price,
    COINGECKO_MARKET_CHART: _coingecko_market_chart,
    COINCAP_ASSET: _coincap_asset,
    COINCAP_HISTORY: _coincap_history,
}


class SchemaNormalizer:
    """Selects a mapping by provider schema and applies it."""

    def __init__(self, mappings: Optional[Dict[ProviderSchema, Mapping]] = None):
        self.mappings = dict(DEFAULT_MAPPINGS if mappings is None else mappings)

    def normalize(
        self,
        raw: Any,
        schema: ProviderSchema,
        request: DataRequest,
        *,
        fetched_at: str,
    ) -> CanonicalRecord:
        if schema.dataset_class is not request.dataset_class:
            raise SchemaMismatch(
                "Schema does not produce the requested dataset",
                {"schema": str(schema), "dataset_class": request.dataset_class.value},
            )
        mapping = self.mappings.get(schema)
        if mapping is None:
            raise SchemaMismatch("No mapping registered for schema", {"schema": str(schema)})
        return mapping(raw, request, schema.provider, fetched_at)


_default_normalizer = SchemaNormalizer()


def normalize(raw: Any, schema: ProviderSchema, request: DataRequest, *, fetched_at: str) -> CanonicalRecord:
    """Normalize with the built-in mapping table."""
    return _default_normalizer.normalize(raw, schema, request, fetched_at=fetched_at)
