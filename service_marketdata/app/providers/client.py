"""
HTTP client for one upstream market data provider.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from shared.errors import PermanentUpstreamError, TransientUpstreamError, UpstreamUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, SleepFunc, retry_async


@dataclass(frozen=True)
class ProviderRequest:
    """One upstream call: a path relative to the provider base URL plus query params."""

    provider: str
    path: str
    params: Dict[str, Any] = field(default_factory=dict)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderClient:
    """Performs provider calls with classified failures and bounded retries.

    Timeouts, transport errors, 429 and 5xx responses are transient and
    retried with exponential backoff. Any other 4xx, or a body that is not
    JSON, is permanent and raised straight away. Exhausted retries surface
    as ``UpstreamUnavailable``.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        retry_config: Optional[RetryConfig] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: SleepFunc = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.metrics = metrics
        self.logger = get_logger(f"marketdata.provider.{provider}")
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def fetch(self, request: ProviderRequest) -> Any:
        """Fetch and JSON-decode one provider response, retrying transient failures."""

        async def _attempt() -> Any:
            try:
                return await self._request_once(request)
            except TransientUpstreamError:
                if self.metrics:
                    self.metrics.increment_counter("upstream_retries_total", provider=self.provider)
                raise

        try:
            payload = await retry_async(
                _attempt,
                config=self.retry_config,
                retry_on=(TransientUpstreamError,),
                name=f"{self.provider}.fetch",
                sleep=self._sleep,
                delay_hint=lambda exc: getattr(exc, "retry_after", None),
            )
        except RetryError as exc:
            self._record_outcome("unavailable")
            raise UpstreamUnavailable(
                self.provider,
                attempts=exc.attempts,
                message=f"retries exhausted: {exc.last_exception}",
                details={"path": request.path, "delays": exc.delays},
            ) from exc.last_exception
        except PermanentUpstreamError:
            self._record_outcome("permanent_error")
            raise

        self._record_outcome("success")
        return payload

    async def _request_once(self, request: ProviderRequest) -> Any:
        try:
            response = await self._client.get(request.path, params=request.params)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(
                self.provider,
                f"timeout: {exc}",
                {"path": request.path},
            )
        except httpx.TransportError as exc:
            raise TransientUpstreamError(
                self.provider,
                f"transport error: {exc}",
                {"path": request.path},
            )

        status = response.status_code
        if status == 429 or status >= 500:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise TransientUpstreamError(
                self.provider,
                f"HTTP {status}",
                {"path": request.path, "status_code": status},
                status_code=status,
                retry_after=retry_after,
            )

        if status >= 300:
            self.logger.error(
                "Provider rejected request",
                path=request.path,
                params=request.params,
                status_code=status,
                response=response.text[:200],
            )
            raise PermanentUpstreamError(
                self.provider,
                f"HTTP {status}",
                {"path": request.path, "status_code": status, "body": response.text[:200]},
                status_code=status,
            )

        try:
            payload = response.json()
        except ValueError:
            raise PermanentUpstreamError(
                self.provider,
                "response body is not JSON",
                {"path": request.path, "status_code": status},
                status_code=status,
            )

        self.logger.debug("Provider response received", path=request.path, status_code=status)
        return payload

    def _record_outcome(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("upstream_fetches_total", provider=self.provider, outcome=outcome)
