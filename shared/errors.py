"""
Shared error handling for the tour booking state layer.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class BookingLayerException(Exception):
    """Base exception for booking layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
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


class ValidationError(BookingLayerException):
    """Malformed keys, ids or request bodies."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AuthenticationError(BookingLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class NotFoundError(BookingLayerException):
    """Requested resource is absent or expired.

    Stores never raise this; they return ``None``. Routes raise it to
    produce a 404.
    """

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class UpstreamUnavailableError(BookingLayerException):
    """An upstream fetch failed: network error, bad status, bad body, timeout."""

    status_code = 502

    def __init__(self, service: str, message: str = "Upstream unavailable", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("UPSTREAM_UNAVAILABLE", f"{service}: {message}", details)


class ConfigurationMissingError(BookingLayerException):
    """Required configuration is absent for this request path."""

    status_code = 500

    def __init__(self, setting: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.setting = setting
        super().__init__(
            "CONFIGURATION_MISSING",
            message or f"{setting} is not configured",
            details,
        )
