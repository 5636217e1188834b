"""
Shared error handling for the CDN gateway.

Every error leaving the service is rendered as the uniform JSON envelope
``{"success": false, "error": ..., "message": ...}``.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorEnvelope(BaseModel):
    """Envelope for failed requests."""

    success: bool = False
    error: str
    message: Optional[str] = None

    def render(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CdnException(Exception):
    """Base exception for CDN gateway services."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self, expose_details: bool = False) -> ErrorEnvelope:
        """Convert to error envelope.

        ``details["reason"]`` carries internal context (usually the upstream
        exception text) and is only surfaced when ``expose_details`` is set.
        """
        reason = self.details.get("reason") if expose_details else None
        return ErrorEnvelope(error=self.message, message=reason)


class ValidationError(CdnException):
    """Bad input shape, size or type."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AuthenticationError(CdnException):
    """Missing credentials."""

    status_code = 401

    def __init__(self, message: str = "API key is required", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(CdnException):
    """Credentials present but wrong."""

    status_code = 403

    def __init__(self, message: str = "Invalid API key", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class NotFoundError(CdnException):
    """Storage backend reports the object missing."""

    status_code = 404

    def __init__(self, message: str = "File not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class RateLimitError(CdnException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Too many requests, please try again later.",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMIT_ERROR", message, details)


class UpstreamError(CdnException):
    """Storage backend call failed for any other reason."""

    status_code = 500

    def __init__(self, message: str = "Storage backend error", details: Optional[Dict[str, Any]] = None):
        super().__init__("UPSTREAM_ERROR", message, details)
