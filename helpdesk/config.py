from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from helpdesk.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    """Roles carried in tokens and identity snapshots."""

    ADMIN = "admin"
    TECHNICIAN = "technician"
    USER = "user"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings shared by the API server and the session client."""

    # Token issuance
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("helpdesk-system", "JWT_ISSUER")
    jwt_access_audience: str = env_field("helpdesk-users", "JWT_ACCESS_AUDIENCE")
    jwt_refresh_audience: str = env_field("helpdesk-refresh", "JWT_REFRESH_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        30,
        "JWT_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Login lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_lock_minutes: int = env_field(30, "LOGIN_LOCK_MINUTES")

    # HTTP / websocket server
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    ws_handshake_timeout_seconds: float = env_field(
        10.0,
        "WS_HANDSHAKE_TIMEOUT_SECONDS",
        description="Time a websocket client has to send its auth payload",
    )

    # Session client
    api_base_url: str = env_field("http://localhost:3000", "API_BASE_URL")
    login_path: str = env_field("/api/auth/login", "AUTH_LOGIN_PATH")
    refresh_path: str = env_field("/api/auth/refresh", "AUTH_REFRESH_PATH")
    verify_path: str = env_field("/api/auth/verify", "AUTH_VERIFY_PATH")
    logout_path: str = env_field("/api/auth/logout", "AUTH_LOGOUT_PATH")
    request_timeout_seconds: float = env_field(15.0, "REQUEST_TIMEOUT_SECONDS")
    renewal_timeout_seconds: float = env_field(10.0, "RENEWAL_TIMEOUT_SECONDS")
    renewal_interval_seconds: float = env_field(
        20 * 60,
        "RENEWAL_INTERVAL_SECONDS",
        description="Upper bound between proactive renewals",
    )
    renewal_margin_seconds: float = env_field(
        60,
        "RENEWAL_MARGIN_SECONDS",
        description="Renew this long before the access token expires",
    )
    inactivity_timeout_seconds: float = env_field(15 * 60, "INACTIVITY_TIMEOUT_SECONDS")
    inactivity_check_interval_seconds: float = env_field(60, "INACTIVITY_CHECK_INTERVAL_SECONDS")
    inactivity_warning_seconds: float = env_field(2 * 60, "INACTIVITY_WARNING_SECONDS")
    storage_key_prefix: str = env_field("helpdesk", "STORAGE_KEY_PREFIX")
    storage_poll_interval_seconds: float = env_field(1.0, "STORAGE_POLL_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens become invalid on restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("login_path", "refresh_path", "verify_path", "logout_path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return "/" + value.lstrip("/")

    def storage_key(self, name: str) -> str:
        return f"{self.storage_key_prefix}_{name}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
