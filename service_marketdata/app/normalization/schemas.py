"""
Provider schema identities.

A provider schema names the raw payload shape a provider returns for one
dataset class. The normalizer selects its mapping table by this identity,
never by inspecting the payload.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..models.records import DatasetClass


@dataclass(frozen=True)
class ProviderSchema:
    provider: str
    dataset_class: DatasetClass

    def __str__(self) -> str:
        return f"{self.provider}/{self.dataset_class.value}"


COINGECKO_SIMPLE_PRICE = ProviderSchema("coingecko", DatasetClass.SIMPLE_PRICE)
COINGECKO_MARKET_CHART = ProviderSchema("coingecko", DatasetClass.MARKET_CHART)
COINCAP_ASSET = ProviderSchema("coincap", DatasetClass.SIMPLE_PRICE)
COINCAP_HISTORY = ProviderSchema("coincap", DatasetClass.MARKET_CHART)
