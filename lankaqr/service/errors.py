from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    The ``message`` is user facing and must never include internal detail; put
    diagnostics in ``detail``, which is logged but not returned.
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


class InvalidCredentials(ServiceError):
    """Wrong password or PIN (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidSession(ServiceError):
    """Session cookie missing, expired, revoked or forged (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidIdToken(InvalidSession):
    """The identity provider rejected an ID token (it may be a custom token)."""
    error_code = "invalid_id_token"


class InvalidOrExpiredToken(ServiceError):
    """Invite/reset token unknown, used or expired (400, or 404 when unknown)."""
    status_code = 400
    error_code = "invalid_token"


class NotAuthorized(ServiceError):
    """Role or tenant mismatch (403)."""
    status_code = 403
    error_code = "forbidden"


class MissingContext(ServiceError):
    """Claims lack the company/branch context an operation needs (400)."""
    status_code = 400
    error_code = "missing_context"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimited(ServiceError):
    """Too many requests for the same subject; retry later (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "InvalidSession",
    "InvalidIdToken",
    "InvalidOrExpiredToken",
    "NotAuthorized",
    "MissingContext",
    "NotFoundError",
    "RateLimited",
    "ServerError",
]
