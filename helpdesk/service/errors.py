from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Failure raised by the auth service and rendered by the API envelope.

    Subclasses pin ``status_code`` and the envelope's ``error_code``; both
    may be overridden per instance. ``detail`` ends up in
    ``error.details``.
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


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email/password pair rejected, or the account is disabled."""

    error_code = "invalid_credentials"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token is malformed, expired, unknown or already rotated."""

    error_code = "invalid_refresh_token"


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime) -> None:
        super().__init__(
            "account temporarily locked",
            detail={"locked_until": locked_until.isoformat()},
        )
        self.locked_until = locked_until


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate account or similar uniqueness clash."""

    status_code = 409
    error_code = "conflict"


class ConnectionRejected(Exception):
    """A long-lived connection failed handshake authentication.

    ``reason`` is one of ``missing_token``, ``malformed_token``,
    ``expired_token`` or ``invalid_token``. The gateway never retries; the
    client has to reconnect with a fresh credential.
    """

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ConnectionRejected",
]
