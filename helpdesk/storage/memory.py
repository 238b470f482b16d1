from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from helpdesk.logging import get_logger
from helpdesk.storage.errors import ConstraintViolation
from helpdesk.storage.models import RefreshGrant, User


class MemoryStore:
    """In-process identity store: users, password hashes and refresh grants."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_grants: Dict[str, RefreshGrant] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        department: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized_email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                display_name=display_name or normalized_email.split("@", 1)[0],
                role=role,
                department=department,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            return user

    # credentials
    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts:
                user.locked_until = now + lock_for
            return user

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            return user

    # refresh grants
    def save_refresh_grant(self, grant: RefreshGrant) -> None:
        with self._data_lock:
            if grant.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": grant.user_id})
            self.refresh_grants[grant.jti] = grant

    def get_refresh_grant(self, jti: str) -> Optional[RefreshGrant]:
        with self._data_lock:
            return self.refresh_grants.get(jti)

    def revoke_refresh_grant(
        self, jti: str, *, replaced_by: Optional[str] = None
    ) -> bool:
        """Mark a grant revoked; returns False when it was already revoked."""
        with self._data_lock:
            grant = self.refresh_grants.get(jti)
            if not grant or grant.is_revoked:
                return False
            grant.revoked_at = datetime.now(timezone.utc)
            grant.replaced_by = replaced_by
            return True

    def revoke_user_refresh_grants(self, user_id: str) -> int:
        with self._data_lock:
            now = datetime.now(timezone.utc)
            revoked = 0
            for grant in self.refresh_grants.values():
                if grant.user_id == user_id and not grant.is_revoked:
                    grant.revoked_at = now
                    revoked += 1
            return revoked

    def purge_expired_grants(self, now: datetime) -> int:
        with self._data_lock:
            stale = [jti for jti, g in self.refresh_grants.items() if g.expires_at <= now]
            for jti in stale:
                self.refresh_grants.pop(jti, None)
            if stale:
                self.logger.info("refresh_grants_purged", count=len(stale))
            return len(stale)
