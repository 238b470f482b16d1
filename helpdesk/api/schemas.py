from __future__ import annotations

import re
import unicodedata
import uuid
from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from helpdesk.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_refresh_token",
    "account_locked",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid.uuid4())


class ErrorBody(BaseModel):
    """Error half of the response envelope, with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    # Drop zero-width characters before NFKC normalization
    cleaned = "".join(c for c in value if c not in "\u200b\u200c\u200d\ufeff")
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    role: str
    department: Optional[str] = None
    is_active: bool = True
    last_login_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: str
    expires_in: int


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class NotificationTarget(BaseModel):
    scope: Literal["identity", "room", "broadcast"]
    id: Optional[str] = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _check_target_id(self):
        if self.scope == "broadcast" and self.id is not None:
            raise ValueError("broadcast takes no target id")
        if self.scope != "broadcast" and not self.id:
            raise ValueError(f"{self.scope} target requires an id")
        return self


class NotificationRequest(BaseModel):
    kind: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., max_length=4000)
    priority: str = Field(default="normal", max_length=32)
    target: NotificationTarget
    url: Optional[str] = Field(default=None, max_length=2048)
    icon: Optional[str] = Field(default=None, max_length=128)
    color: Optional[str] = Field(default=None, max_length=32)


class NotificationResponse(BaseModel):
    id: str
    scope: str
    target: Optional[str] = None
    delivered: int


class HubStatsResponse(BaseModel):
    connected_identity_count: int
    connected_identity_ids: List[str]
