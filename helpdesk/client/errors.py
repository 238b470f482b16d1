from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for session client failures."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidCredentials(SessionError):
    """Login rejected by the identity store."""


class SessionExpired(SessionError):
    """The session could not be verified and has been destroyed."""


class RenewalFailed(SessionError):
    """The refresh credential was rejected or missing; the session is gone."""


class NetworkError(SessionError):
    """Transport failure or timeout. Session state is left untouched."""


class AuthorizationRejected(SessionError):
    """The identity store answered 401 for a presented credential."""

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message, status_code=401)


__all__ = [
    "SessionError",
    "InvalidCredentials",
    "SessionExpired",
    "RenewalFailed",
    "NetworkError",
    "AuthorizationRejected",
]
