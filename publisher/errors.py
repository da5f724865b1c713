"""
Multipublish Errors
===================
Centralized error taxonomy for adapters, the orchestrator and the HTTP surface.
"""

from enum import Enum
from typing import Any, Optional

import httpx


class ErrorCode(str, Enum):
    """Standardized error codes for debugging and frontend display."""
    # Generic
    UNKNOWN = "UNKNOWN"
    INTERNAL = "INTERNAL"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    # Auth
    AUTH_FAILED = "AUTH_FAILED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REFRESH_FAILED = "REFRESH_FAILED"
    REFRESH_UNSUPPORTED = "REFRESH_UNSUPPORTED"
    NOT_CONNECTED = "NOT_CONNECTED"

    # Caller mistakes
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Platform
    PLATFORM_REJECTED = "PLATFORM_REJECTED"
    CONTAINER_ERROR = "CONTAINER_ERROR"
    CONTAINER_EXPIRED = "CONTAINER_EXPIRED"
    PUBLISH_FAILED = "PUBLISH_FAILED"
    UPLOAD_FAILED = "UPLOAD_FAILED"

    # Storage
    STORAGE_FAILED = "STORAGE_FAILED"
    TRANSCODE_FAILED = "TRANSCODE_FAILED"

    # Network
    NETWORK_ERROR = "NETWORK_ERROR"


class PublishError(Exception):
    """
    Error raised while publishing to a platform.

    Attributes:
        code: Standardized error code
        message: Human-readable error message
        details: Optional additional context (raw platform payload lives here)
        retryable: Whether this error can be retried
        platform: Which platform raised the error
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[dict] = None,
        retryable: bool = False,
        platform: str = "unknown",
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.retryable = retryable
        self.platform = platform
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/API response."""
        return {
            "error_code": self.code.value,
            "error_message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "platform": self.platform,
        }


class AuthError(PublishError):
    """Token rejected by the platform (HTTP 401 or a platform invalid-token code)."""

    def __init__(self, message: str, details: Optional[dict] = None, platform: str = "unknown",
                 code: ErrorCode = ErrorCode.AUTH_FAILED):
        super().__init__(code, message, details=details, retryable=False, platform=platform)


class ValidationError(PublishError):
    """Caller mistake, e.g. a missing media URL. Never retried."""

    def __init__(self, message: str, details: Optional[dict] = None, platform: str = "unknown"):
        super().__init__(ErrorCode.VALIDATION_FAILED, message, details=details, platform=platform)


class RemoteError(PublishError):
    """
    Platform-side failure that is not token related.

    The raw response body is kept in ``raw_body`` (and ``details["body"]``)
    so the UI can append it to the failure banner.
    """

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        raw_body: Any = None,
        platform: str = "unknown",
        code: ErrorCode = ErrorCode.PLATFORM_REJECTED,
    ):
        self.http_status = http_status
        self.raw_body = raw_body
        super().__init__(
            code,
            message,
            details={"http_status": http_status, "body": raw_body},
            platform=platform,
        )


class PollTimeoutError(PublishError):
    """Polling exceeded its bound. The remote job may still complete."""

    HINT = "Still processing on the platform, check back later."

    def __init__(self, message: str, attempts: int = 0, platform: str = "unknown"):
        self.attempts = attempts
        super().__init__(
            ErrorCode.TIMEOUT,
            message,
            details={"attempts": attempts, "hint": self.HINT},
            retryable=True,
            platform=platform,
        )


class RefreshUnsupported(PublishError):
    """Platform cannot refresh the stored token; the user must reconnect."""

    def __init__(self, message: str, platform: str = "unknown"):
        super().__init__(ErrorCode.REFRESH_UNSUPPORTED, message, platform=platform)


class InvalidTransition(PublishError):
    """Attempted to move a publish state out of a terminal status."""

    def __init__(self, current: str, target: str, platform: str = "unknown"):
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Cannot transition from {current} to {target}",
            platform=platform,
        )


class CancelRequested(Exception):
    """Raised when the driving session stopped polling."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Cancel requested for upload job {job_id}")


def error_from_exception(e: Exception, platform: str = "unknown") -> PublishError:
    """Convert a generic exception to a PublishError."""
    if isinstance(e, PublishError):
        return e

    if isinstance(e, httpx.TimeoutException):
        return PublishError(ErrorCode.TIMEOUT, f"Request timed out: {e}", retryable=True, platform=platform)
    if isinstance(e, httpx.TransportError):
        return PublishError(ErrorCode.NETWORK_ERROR, f"Network error: {e}", retryable=True, platform=platform)

    error_msg = str(e) or e.__class__.__name__
    lowered = error_msg.lower()
    if "timeout" in lowered:
        return PublishError(ErrorCode.TIMEOUT, error_msg, retryable=True, platform=platform)
    if "connection" in lowered or "network" in lowered:
        return PublishError(ErrorCode.NETWORK_ERROR, error_msg, retryable=True, platform=platform)

    return PublishError(ErrorCode.UNKNOWN, error_msg, platform=platform)


# HTTP status code mapping
ERROR_HTTP_STATUS = {
    ErrorCode.UNKNOWN: 500,
    ErrorCode.INTERNAL: 500,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.CANCELLED: 499,
    ErrorCode.AUTH_FAILED: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.REFRESH_FAILED: 401,
    ErrorCode.REFRESH_UNSUPPORTED: 401,
    ErrorCode.NOT_CONNECTED: 401,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.PLATFORM_REJECTED: 502,
    ErrorCode.STORAGE_FAILED: 502,
    ErrorCode.NETWORK_ERROR: 502,
}


def get_http_status(code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_HTTP_STATUS.get(code, 500)
