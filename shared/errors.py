"""
Shared error handling for the market data client.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error payload handed to the host for display."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ClientLayerException(Exception):
    """Base exception for the market data client."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(ClientLayerException):
    """Authentication-related errors."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "AUTHENTICATION_ERROR"):
        super().__init__(code, message, details)


class CredentialMissingError(AuthenticationError):
    """No credential is stored."""

    def __init__(self, message: str = "No credential stored", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CREDENTIAL_MISSING")


class CredentialExpiredError(AuthenticationError):
    """The stored access token is past its expiry."""

    def __init__(self, message: str = "Credential expired", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CREDENTIAL_EXPIRED")


class SessionExpiredError(AuthenticationError):
    """The session could not be refreshed; the caller must log in again."""

    def __init__(self, message: str = "Session expired, please log in again",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="UNAUTHENTICATED")


class ValidationError(ClientLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StreamConnectionError(ClientLayerException):
    """The streaming connection could not be established."""

    def __init__(self, message: str = "Stream connection failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "STREAM_CONNECT_FAILED"):
        super().__init__(code, message, details)


class ProtocolError(ClientLayerException):
    """An inbound frame could not be understood."""

    def __init__(self, message: str = "Malformed frame", details: Optional[Dict[str, Any]] = None):
        super().__init__("PROTOCOL_ERROR", message, details)


class ExternalServiceError(ClientLayerException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


STATUS_MESSAGES: Dict[int, str] = {
    400: "Invalid data",
    401: "Not authorized, please log in",
    403: "Access denied, insufficient privileges",
    404: "Resource not found",
    409: "Data conflict",
    422: "Invalid data",
    429: "Too many requests, please try again later",
    500: "Internal server error",
}


def describe_status(status_code: int, server_message: Optional[str] = None) -> str:
    """Return the user-facing message for a failed HTTP status."""
    # Server-provided text wins for validation style failures
    if server_message and status_code in (400, 409, 422):
        return server_message
    if status_code in STATUS_MESSAGES:
        return STATUS_MESSAGES[status_code]
    return server_message or "An error occurred"
