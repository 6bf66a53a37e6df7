"""
Refresh trigger contract and the key-set refresher.

The pipeline never schedules itself. An external scheduler (cron, a
Kubernetes CronJob, ``scripts/refresh_known_keys.py``) calls ``run_once``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol

from shared.errors import AccessLayerException
from shared.logging import get_logger, set_request_id

from ..coordinator.fetch_coordinator import FetchCoordinator
from ..models.requests import DataRequest


class RefreshTrigger(Protocol):
    async def run_once(self) -> Dict[str, Any]:
        ...


class KeySetRefresher:
    """Re-resolves a fixed set of requests through the coordinator.

    Requests go through the normal single-flight lease with the cache fast
    path skipped, so a refresh racing an on-demand request for the same key
    joins it instead of fetching twice.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        requests: Iterable[DataRequest],
        *,
        caller: str = "refresh-trigger",
        concurrency: int = 4,
        timeout: Optional[float] = None,
    ):
        self.coordinator = coordinator
        self.requests: List[DataRequest] = list(requests)
        self.caller = caller
        self.timeout = timeout
        self.logger = get_logger("marketdata.refresh")
        self._semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_once(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"planned": len(self.requests), "refreshed": 0, "failed": 0, "errors": []}
        if not self.requests:
            self.logger.info("No refresh keys configured; refresh skipped")
            return summary

        run_id = set_request_id()
        self.logger.info("Refresh started", run_id=run_id, planned=summary["planned"])
        start = time.perf_counter()
        results = await asyncio.gather(*(self._refresh(request) for request in self.requests))
        for key, error in results:
            if error is None:
                summary["refreshed"] += 1
            else:
                summary["failed"] += 1
                summary["errors"].append({"key": key, **error})

        self.logger.info(
            "Refresh completed",
            planned=summary["planned"],
            refreshed=summary["refreshed"],
            failed=summary["failed"],
            duration=time.perf_counter() - start,
        )
        return summary

    async def _refresh(self, request: DataRequest):
        key = request.cache_key()
        async with self._semaphore:
            try:
                await self.coordinator.resolve_request(
                    request,
                    caller=self.caller,
                    timeout=self.timeout,
                    bypass_cache=True,
                )
            except AccessLayerException as exc:
                self.logger.error("Failed to refresh key", key=key, code=exc.code, error=exc.message)
                return key, {"code": exc.code, "message": exc.message}
        return key, None
