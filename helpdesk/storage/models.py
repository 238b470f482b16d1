from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    display_name: str
    role: str = "user"
    department: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class RefreshGrant:
    """Server-side record of an issued refresh token, keyed by its jti."""

    jti: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None
