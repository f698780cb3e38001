"""
Shared error handling for the risk index access layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RiskLayerException(Exception):
    """Base exception for the risk index access layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(RiskLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class TransportTimeout(RiskLayerException):
    """No response from the index before the deadline."""

    def __init__(self, message: str = "Index request timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_TIMEOUT", message, details)


class TransportFailure(RiskLayerException):
    """Network-level failure talking to the index."""

    def __init__(self, message: str = "Index transport failure", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSPORT_FAILURE", message, details)


class UpstreamClientError(RiskLayerException):
    """The index rejected the request (4xx). Never retried."""

    def __init__(self, message: str = "Index rejected request", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_CLIENT_ERROR", message, details)


class IndexQueryError(UpstreamClientError):
    """The index answered with GraphQL errors."""

    def __init__(self, message: str = "Index query returned errors", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "INDEX_QUERY_ERROR"


class UpstreamServerError(RiskLayerException):
    """The index failed to serve the request (5xx)."""

    def __init__(self, message: str = "Index server error", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_SERVER_ERROR", message, details)


class MalformedIndexResponse(UpstreamServerError):
    """The index answered with a payload that does not match the expected records."""

    def __init__(self, message: str = "Malformed index response", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "MALFORMED_INDEX_RESPONSE"


class CacheUnavailable(RiskLayerException):
    """Cache store errors."""

    def __init__(self, message: str = "Cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class DimensionMismatch(RiskLayerException):
    """Malformed inputs handed over by a scoring collaborator."""

    def __init__(self, message: str = "Dimension mismatch", details: Optional[Dict[str, Any]] = None):
        super().__init__("DIMENSION_MISMATCH", message, details)


class GatewayShutdown(RiskLayerException):
    """The gateway stopped before the request could be served."""

    def __init__(self, message: str = "Gateway is shutting down", details: Optional[Dict[str, Any]] = None):
        super().__init__("GATEWAY_SHUTDOWN", message, details)


# Failures that say nothing about the health of the index itself.
NON_TRIPPING_ERRORS = (UpstreamClientError, DimensionMismatch, ValidationError)


def counts_toward_breaker(error: BaseException) -> bool:
    """Whether an execution failure should be recorded by the circuit breaker."""
    return not isinstance(error, NON_TRIPPING_ERRORS)
