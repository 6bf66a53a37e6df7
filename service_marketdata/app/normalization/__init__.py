"""
Normalization package: provider schemas and their canonical mappings.
"""

from .normalizer import SchemaNormalizer, normalize
from .schemas import (
    COINCAP_ASSET,
    COINCAP_HISTORY,
    COINGECKO_MARKET_CHART,
    COINGECKO_SIMPLE_PRICE,
    ProviderSchema,
)

__all__ = [
    "COINCAP_ASSET",
    "COINCAP_HISTORY",
    "COINGECKO_MARKET_CHART",
    "COINGECKO_SIMPLE_PRICE",
    "ProviderSchema",
    "SchemaNormalizer",
    "normalize",
]
