"""
Shared error handling for the market data access layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

try:
    from opentelemetry import trace
    HAS_OPENTELEMETRY = True
except ImportError:
    HAS_OPENTELEMETRY = False


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for the access layer."""

    # Routing layers map client errors to 4xx and everything else to 5xx.
    client_error: bool = False

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        if HAS_OPENTELEMETRY:
            current_span = trace.get_current_span()
            if current_span and current_span.is_recording():
                span_context = current_span.get_span_context()
                if span_context.trace_id != 0:
                    trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Request parameters failed validation."""

    client_error = True

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ServiceError(AccessLayerException):
    """Internal service errors (store failures and the like)."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class SchemaMismatch(AccessLayerException):
    """A payload does not match the schema it is being normalized against.

    ``caused_by_request`` is set when the missing piece is the requested
    asset or currency itself, i.e. the caller asked for something the
    provider does not know about.
    """

    def __init__(
        self,
        message: str = "Payload does not match schema",
        details: Optional[Dict[str, Any]] = None,
        *,
        caused_by_request: bool = False,
    ):
        super().__init__("SCHEMA_MISMATCH", message, details)
        self.caused_by_request = caused_by_request
        self.client_error = caused_by_request


class UpstreamError(AccessLayerException):
    """Base class for provider call failures."""

    def __init__(
        self,
        code: str,
        provider: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
    ):
        super().__init__(code, f"{provider}: {message}", details)
        self.provider = provider
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Timeouts, transport errors, 429 and 5xx responses. Retried."""

    def __init__(
        self,
        provider: str,
        message: str = "Transient upstream failure",
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__("UPSTREAM_TRANSIENT", provider, message, details, status_code=status_code)
        self.retry_after = retry_after


class PermanentUpstreamError(UpstreamError):
    """4xx responses and unusable bodies. Never retried."""

    def __init__(
        self,
        provider: str,
        message: str = "Permanent upstream failure",
        details: Optional[Dict[str, Any]] = None,
        *,
        status_code: Optional[int] = None,
    ):
        super().__init__("UPSTREAM_PERMANENT", provider, message, details, status_code=status_code)


class UpstreamUnavailable(UpstreamError):
    """Retries exhausted on transient failures."""

    def __init__(
        self,
        provider: str,
        attempts: int,
        message: str = "Upstream unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details.setdefault("attempts", attempts)
        super().__init__("UPSTREAM_UNAVAILABLE", provider, message, details)
        self.attempts = attempts


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    client_error = True

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        *,
        retry_after: float = 0.0,
    ):
        details = dict(details or {})
        details.setdefault("retry_after", retry_after)
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.retry_after = retry_after


class LeaseTimeout(AccessLayerException):
    """A caller gave up waiting on an in-flight fetch.

    Only the caller that timed out sees this; the fetch itself keeps going.
    """

    def __init__(self, key: str, timeout: float):
        super().__init__(
            "LEASE_TIMEOUT",
            f"Timed out after {timeout}s waiting for {key}",
            {"key": key, "timeout": timeout},
        )
        self.key = key
        self.timeout = timeout
