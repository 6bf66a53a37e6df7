"""
Test helper functions and factory methods for the market data access layer.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx


START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays and advances the fake clock instead of waiting."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)


class ScriptedUpstream:
    """httpx handler replaying queued responses per URL path.

    Queued items are ``httpx.Response`` objects, exceptions to raise, or
    plain JSON bodies (served as 200). The last item for a path repeats.
    Setting ``gate`` holds every request until the event is set.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.scripts: Dict[str, List[Any]] = {}
        self.gate: Optional[asyncio.Event] = None

    def queue(self, path: str, *responses: Any) -> None:
        self.scripts.setdefault(path, []).extend(responses)

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [call for call in self.calls if call.url.path == path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()

        script = self.scripts.get(request.url.path)
        if not script:
            return httpx.Response(404, json={"error": "not found"})
        item = script.pop(0) if len(script) > 1 else script[0]

        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)


class MarketDataFactory:
    """Factory for provider payloads as the real APIs return them."""

    @staticmethod
    def coingecko_simple_price(asset: str = "bitcoin", currency: str = "usd", price: float = 67000.5) -> Dict[str, Any]:
        return {
            asset: {
                currency: price,
                f"{currency}_market_cap": 1.31e12,
                f"{currency}_24h_vol": 2.5e10,
                f"{currency}_24h_change": -1.25,
                "last_updated_at": 1_699_999_990,
            }
        }

    @staticmethod
    def coingecko_market_chart() -> Dict[str, Any]:
        # Unsorted on purpose; normalization orders points by timestamp.
        return {
            "prices": [[1_699_920_000_000, 1800.0], [1_699_833_600_000, 1780.25], [1_700_006_400_000, 1850.5]],
            "market_caps": [[1_699_920_000_000, 2.1e11], [1_700_006_400_000, 2.2e11]],
            "total_volumes": [[1_699_920_000_000, 9.5e9], [1_700_006_400_000, 1.01e10]],
        }

    @staticmethod
    def coincap_asset(asset: str = "bitcoin", price: str = "67010.1234") -> Dict[str, Any]:
        return {
            "data": {
                "id": asset,
                "symbol": "BTC",
                "priceUsd": price,
                "marketCapUsd": "1310000000000.00",
                "volumeUsd24Hr": "25000000000.5",
                "changePercent24Hr": "-1.1",
            },
            "timestamp": 1_699_999_990_123,
        }

    @staticmethod
    def coincap_history() -> Dict[str, Any]:
        return {
            "data": [
                {"priceUsd": "1850.5", "time": 1_700_006_400_000, "date": "2023-11-15T00:00:00.000Z"},
                {"priceUsd": "1800.0", "time": 1_699_920_000_000, "date": "2023-11-14T00:00:00.000Z"},
            ],
            "timestamp": 1_700_006_500_000,
        }
