from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500/502)
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
    """Malformed input (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthenticatedError(ServiceError):
    """No valid session is present (401)."""
    status_code = 401
    error_code = "unauthorized"


class MagicLinkError(UnauthenticatedError):
    """A magic link could not be redeemed.

    Subclasses stay distinguishable through ``reason`` for logs and callers
    inside the process, but every one of them renders the same public
    message so a caller cannot learn which check failed.
    """

    public_message = "invalid or expired link"
    reason = "invalid"

    def __init__(self, detail: Optional[dict] = None) -> None:
        super().__init__(self.public_message, detail=detail)


class TokenNotFoundError(MagicLinkError):
    reason = "not_found"


class TenantMismatchError(MagicLinkError):
    reason = "tenant_mismatch"


class TokenExpiredError(MagicLinkError):
    reason = "expired"


class TokenAlreadyConsumedError(MagicLinkError):
    reason = "already_consumed"


class InvalidRefreshError(UnauthenticatedError):
    """Refresh credential is invalid, expired, revoked or already rotated (401)."""

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Authenticated but lacking the required role or permission (403)."""
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


class DeliveryFailedError(ServiceError):
    """Link delivery did not complete; issuance itself still stands."""
    status_code = 502
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthenticatedError",
    "MagicLinkError",
    "TokenNotFoundError",
    "TenantMismatchError",
    "TokenExpiredError",
    "TokenAlreadyConsumedError",
    "InvalidRefreshError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "DeliveryFailedError",
]
