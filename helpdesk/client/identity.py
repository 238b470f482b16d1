from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Protocol

import httpx

from helpdesk.client.errors import (
    AuthorizationRejected,
    InvalidCredentials,
    NetworkError,
    SessionError,
)
from helpdesk.config import Role, Settings
from helpdesk.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    display_name: Optional[str] = None
    role: str = Role.USER.value
    department: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "Identity":
        if not isinstance(data, dict) or not data.get("id"):
            raise SessionError("identity payload missing id")
        return cls(
            id=str(data["id"]),
            display_name=data.get("display_name") or data.get("name"),
            role=str(data.get("role") or Role.USER.value),
            department=data.get("department"),
            email=data.get("email"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role,
            "department": self.department,
            "email": self.email,
        }

    def has_role(self, role: str) -> bool:
        return self.role == role

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return self.role in set(roles)

    def can_manage_tickets(self) -> bool:
        return self.has_any_role((Role.ADMIN.value, Role.TECHNICIAN.value))

    def can_view_reports(self) -> bool:
        return self.has_any_role((Role.ADMIN.value, Role.TECHNICIAN.value))

    def can_manage_users(self) -> bool:
        return self.has_role(Role.ADMIN.value)


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(email={self.email!r}, password='***')"


@dataclass(frozen=True)
class SessionGrant:
    """Token material and identity returned by login or refresh."""

    access_token: str
    refresh_token: Optional[str]
    identity: Identity
    expires_at: Optional[datetime] = None


class IdentityStore(Protocol):
    async def authenticate(self, credentials: Credentials) -> SessionGrant: ...

    async def refresh(self, refresh_token: str) -> SessionGrant: ...

    async def revoke(self, refresh_token: str) -> None: ...

    async def verify(self, access_token: str) -> Identity: ...


def _parse_expiry(tokens: Dict[str, Any]) -> Optional[datetime]:
    raw = tokens.get("expires_at")
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    expires_in = tokens.get("expires_in")
    if isinstance(expires_in, (int, float)):
        return datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return None


def parse_grant(data: Dict[str, Any]) -> SessionGrant:
    tokens = data.get("tokens") if isinstance(data, dict) else None
    if not isinstance(tokens, dict) or not tokens.get("access_token"):
        raise SessionError("response carried no access token")
    return SessionGrant(
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
        identity=Identity.from_payload(data.get("user") or {}),
        expires_at=_parse_expiry(tokens),
    )


class HttpIdentityStore:
    """Identity store reached over the helpdesk ``/api/auth`` endpoints.

    Uses its own ``httpx.AsyncClient`` so auth calls never pass through a
    session manager's renewal wrapper.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("identity_store_timeout", path=path)
            raise NetworkError(f"timeout calling {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("identity_store_unreachable", path=path, error=str(exc))
            raise NetworkError(f"transport error calling {path}") from exc

    def _envelope(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise SessionError(
                "invalid response body", status_code=response.status_code
            ) from exc
        if not isinstance(body, dict):
            raise SessionError("invalid response body", status_code=response.status_code)
        return body

    def _error_message(self, body: Dict[str, Any], fallback: str) -> str:
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return fallback

    def _data(self, response: httpx.Response) -> Dict[str, Any]:
        body = self._envelope(response)
        if response.status_code == 401:
            raise AuthorizationRejected(self._error_message(body, "unauthorized"))
        if response.is_error or not body.get("success"):
            raise SessionError(
                self._error_message(body, "request failed"),
                status_code=response.status_code,
            )
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def authenticate(self, credentials: Credentials) -> SessionGrant:
        response = await self._call(
            "POST",
            self.settings.login_path,
            json={"email": credentials.email, "password": credentials.password},
        )
        if response.status_code in (401, 423):
            body = self._envelope(response)
            raise InvalidCredentials(
                self._error_message(body, "invalid credentials"),
                status_code=response.status_code,
            )
        return parse_grant(self._data(response))

    async def refresh(self, refresh_token: str) -> SessionGrant:
        response = await self._call(
            "POST",
            self.settings.refresh_path,
            json={"refresh_token": refresh_token},
        )
        return parse_grant(self._data(response))

    async def revoke(self, refresh_token: str) -> None:
        response = await self._call(
            "POST",
            self.settings.logout_path,
            json={"refresh_token": refresh_token},
        )
        self._data(response)

    async def verify(self, access_token: str) -> Identity:
        response = await self._call(
            "GET",
            self.settings.verify_path,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        data = self._data(response)
        return Identity.from_payload(data.get("user") or {})
