"""
Provider adapters: how a logical data request maps onto each provider's API.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from shared.errors import ValidationError

from ..models.records import DatasetClass
from ..models.requests import DataRequest
from ..normalization.schemas import (
    COINCAP_ASSET,
    COINCAP_HISTORY,
    COINGECKO_MARKET_CHART,
    COINGECKO_SIMPLE_PRICE,
    ProviderSchema,
)
from .client import ProviderRequest


class ProviderAdapter:
    """Base class for provider adapters."""

    name: str = ""
    schemas: Dict[DatasetClass, ProviderSchema] = {}

    def schema_for(self, dataset_class: DatasetClass) -> ProviderSchema:
        try:
            return self.schemas[dataset_class]
        except KeyError:
            raise ValidationError(
                "Provider does not serve this dataset",
                {"provider": self.name, "dataset_class": dataset_class.value},
            )

    def build_request(self, request: DataRequest, *, now: datetime) -> ProviderRequest:
        raise NotImplementedError

    def auth_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {}


class CoinGeckoAdapter(ProviderAdapter):
    """CoinGecko v3 ``/simple/price`` and ``/coins/{id}/market_chart``."""

    name = "coingecko"
    schemas = {
        DatasetClass.SIMPLE_PRICE: COINGECKO_SIMPLE_PRICE,
        DatasetClass.MARKET_CHART: COINGECKO_MARKET_CHART,
    }
    HOURLY_MAX_DAYS = 90

    def build_request(self, request: DataRequest, *, now: datetime) -> ProviderRequest:
        if request.dataset_class is DatasetClass.SIMPLE_PRICE:
            return ProviderRequest(
                provider=self.name,
                path="/simple/price",
                params={
                    "ids": request.asset_id,
                    "vs_currencies": request.currency,
                    "include_market_cap": "true",
                    "include_24hr_vol": "true",
                    "include_24hr_change": "true",
                    "include_last_updated_at": "true",
                },
            )

        params = {"vs_currency": request.currency, "days": request.range_descriptor}
        # CoinGecko picks granularity from the range; only daily can be forced.
        if request.interval == "daily":
            params["interval"] = "daily"
        else:
            self._check_granularity(request)
        return ProviderRequest(
            provider=self.name,
            path=f"/coins/{request.asset_id}/market_chart",
            params=params,
        )

    def _check_granularity(self, request: DataRequest) -> None:
        days = request.range_descriptor
        if request.interval == "5m":
            served = days == "1"
        else:
            served = days != "max" and 2 <= int(days) <= self.HOURLY_MAX_DAYS
        if not served:
            raise ValidationError(
                "coingecko cannot serve this interval for the requested range",
                {"provider": self.name, "interval": request.interval, "range": days},
            )

    def auth_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {"x-cg-demo-api-key": api_key} if api_key else {}


class CoinCapAdapter(ProviderAdapter):
    """CoinCap v2 ``/assets/{id}`` and ``/assets/{id}/history`` (USD only)."""

    name = "coincap"
    schemas = {
        DatasetClass.SIMPLE_PRICE: COINCAP_ASSET,
        DatasetClass.MARKET_CHART: COINCAP_HISTORY,
    }
    _INTERVALS = {"5m": "m5", "hourly": "h1", "daily": "d1"}

    def build_request(self, request: DataRequest, *, now: datetime) -> ProviderRequest:
        if request.currency != "usd":
            raise ValidationError(
                "coincap only quotes usd",
                {"provider": self.name, "currency": request.currency},
            )

        if request.dataset_class is DatasetClass.SIMPLE_PRICE:
            return ProviderRequest(provider=self.name, path=f"/assets/{request.asset_id}")

        params: Dict[str, object] = {"interval": self._INTERVALS[request.interval]}
        if request.range_descriptor != "max":
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            start = now - timedelta(days=int(request.range_descriptor))
            params["start"] = int(start.timestamp() * 1000)
            params["end"] = int(now.timestamp() * 1000)
        return ProviderRequest(
            provider=self.name,
            path=f"/assets/{request.asset_id}/history",
            params=params,
        )

    def auth_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"} if api_key else {}


ADAPTERS: Dict[str, ProviderAdapter] = {
    adapter.name: adapter for adapter in (CoinGeckoAdapter(), CoinCapAdapter())
}
