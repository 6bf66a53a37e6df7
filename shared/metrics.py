"""
Shared metrics configuration for the market data access layer.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server
from typing import Dict, Any, Optional
import threading

from shared.logging import get_logger


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is passed in, so several
    pipelines (or test cases) can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self.logger = get_logger(f"{service_name}.metrics")
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up pipeline metrics."""

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["cache_hits_total"] = Counter(
            "cache_hits_total",
            "Total cache hits",
            ["tier"],
            registry=self.registry
        )

        self._metrics["cache_misses_total"] = Counter(
            "cache_misses_total",
            "Total cache misses",
            ["tier"],
            registry=self.registry
        )

        self._metrics["upstream_fetches_total"] = Counter(
            "upstream_fetches_total",
            "Upstream fetches by outcome",
            ["provider", "outcome"],
            registry=self.registry
        )

        self._metrics["upstream_retries_total"] = Counter(
            "upstream_retries_total",
            "Upstream attempts that were retried",
            ["provider"],
            registry=self.registry
        )

        self._metrics["rate_limit_denials_total"] = Counter(
            "rate_limit_denials_total",
            "Upstream calls refused by the rate limiter",
            ["provider"],
            registry=self.registry
        )

        self._metrics["single_flight_joins_total"] = Counter(
            "single_flight_joins_total",
            "Callers that joined an in-flight fetch instead of starting one",
            ["dataset_class"],
            registry=self.registry
        )

        self._metrics["in_flight_fetches"] = Gauge(
            "in_flight_fetches",
            "Fetch leases currently in flight",
            registry=self.registry
        )

        self._metrics["fetch_duration_seconds"] = Histogram(
            "fetch_duration_seconds",
            "Duration of a leased fetch from rate-limit check to release",
            ["dataset_class", "outcome"],
            registry=self.registry
        )

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        start_http_server(port, registry=self.registry)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        self.increment_counter("errors_total", error_type=error_type, service=service or self.service_name)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        try:
            if labels:
                metric.labels(**labels).inc()
            else:
                metric.inc()
        except ValueError as exc:
            self.logger.debug("Failed to record counter", metric=metric_name, error=str(exc))

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).set(value)
            else:
                metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        try:
            if labels:
                metric.labels(**labels).observe(value)
            else:
                metric.observe(value)
        except ValueError as exc:
            self.logger.debug("Failed to record histogram", metric=metric_name, error=str(exc))

    def sample(self, metric_name: str, **labels) -> float:
        """Current value of a counter or gauge sample (0.0 when absent)."""
        value = self.registry.get_sample_value(metric_name, labels or None)
        return value or 0.0


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
