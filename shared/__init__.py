"""
Shared utilities for the market data access layer.

This package aggregates common building blocks consumed by the pipeline:

- config: Base settings via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Explicit retry loop with exponential backoff

Any cross-service logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
