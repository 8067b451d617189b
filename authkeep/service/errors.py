from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenErrorReason(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    NOT_FOUND_OR_REVOKED = "not_found_or_revoked"
    EXPIRED = "expired"
    CONCURRENT_ROTATION = "concurrent_rotation"


class TokenError(AuthenticationError):
    """A presented token was rejected (401).

    ``reason`` is for logs and audit metadata only; the client sees
    ``message``, which callers keep generic.
    """

    def __init__(
        self,
        reason: TokenErrorReason,
        message: str = "invalid token",
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.reason = TokenErrorReason(reason)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        limit: int = 0,
        retry_after: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.limit = limit
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuditWriteFailure(Exception):
    """An audit event could not be stored. Never leaves the audit logger."""

    def __init__(self, event: str, cause: BaseException) -> None:
        super().__init__(f"audit write failed for {event}: {cause}")
        self.event = event
        self.cause = cause


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenErrorReason",
    "TokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "AuditWriteFailure",
]
