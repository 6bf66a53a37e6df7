"""
Registry pairing provider adapters with their HTTP clients.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from shared.errors import ValidationError
from shared.logging import get_logger

from .adapters import ProviderAdapter
from .client import ProviderClient


class ProviderRegistry:
    """Holds one (adapter, client) pair per configured provider."""

    def __init__(self, default_provider: str):
        self.default_provider = default_provider
        self.logger = get_logger("marketdata.providers")
        self._providers: Dict[str, Tuple[ProviderAdapter, ProviderClient]] = {}

    def register(self, adapter: ProviderAdapter, client: ProviderClient) -> None:
        if adapter.name != client.provider:
            raise ValueError(f"adapter {adapter.name!r} paired with client for {client.provider!r}")
        self._providers[adapter.name] = (adapter, client)
        self.logger.info("Registered provider", provider=adapter.name, base_url=client.base_url)

    def get(self, name: Optional[str] = None) -> Tuple[ProviderAdapter, ProviderClient]:
        provider = name or self.default_provider
        try:
            return self._providers[provider]
        except KeyError:
            raise ValidationError(
                "Unknown provider",
                {"provider": provider, "available": sorted(self._providers)},
            )

    def names(self) -> List[str]:
        return sorted(self._providers)

    async def close(self) -> None:
        for _, client in self._providers.values():
            await client.close()
