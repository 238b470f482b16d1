from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from helpdesk.config import Role, Settings
from helpdesk.logging import get_logger
from helpdesk.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
)
from helpdesk.service.tokens import (
    ACCESS,
    REFRESH,
    TokenClaims,
    TokenCodec,
    TokenError,
    extract_bearer,
)
from helpdesk.storage.errors import ConstraintViolation
from helpdesk.storage.models import RefreshGrant, User

logger = get_logger(__name__)

_ROLE_RANK = {Role.USER.value: 0, Role.TECHNICIAN.value: 1, Role.ADMIN.value: 2}


class IdentityRecords(Protocol):
    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        department: Optional[str] = None,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lock_for: timedelta, now: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]: ...

    def save_refresh_grant(self, grant: RefreshGrant) -> None: ...

    def get_refresh_grant(self, jti: str) -> Optional[RefreshGrant]: ...

    def revoke_refresh_grant(self, jti: str, *, replaced_by: Optional[str] = None) -> bool: ...

    def revoke_user_refresh_grants(self, user_id: str) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    display_name: Optional[str] = None
    department: Optional[str] = None
    email: Optional[str] = None
    token_jti: Optional[str] = None


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    refresh_jti: str
    token_type: str = "Bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "expires_in": max(
                0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds())
            ),
        }


class AuthService:
    """Password login, token issuance, refresh rotation and revocation."""

    def __init__(self, store: IdentityRecords, codec: TokenCodec, settings: Settings) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_user(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        role: str = Role.USER.value,
        department: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.create_user(
                email, display_name, role=role, department=department
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    async def login(self, email: str, password: str) -> tuple[User, IssuedTokens]:
        user = self.store.get_user_by_email(email)
        if not user:
            raise InvalidCredentialsError("invalid credentials")
        if not user.is_active:
            self.logger.info("login_inactive_user", user_id=user.id)
            raise InvalidCredentialsError("account disabled")
        now = self._now()
        if user.is_locked(now):
            raise AccountLockedError(user.locked_until)
        if not self.verify_password(user.id, password):
            updated = self.store.record_failed_login(
                user.id,
                max_attempts=self.settings.max_login_attempts,
                lock_for=timedelta(minutes=self.settings.login_lock_minutes),
                now=now,
            )
            if updated and updated.is_locked(now):
                self.logger.warning(
                    "login_account_locked",
                    user_id=user.id,
                    attempts=updated.login_attempts,
                )
                raise AccountLockedError(updated.locked_until)
            raise InvalidCredentialsError("invalid credentials")
        self.store.record_successful_login(user.id, now=now)
        tokens = self._issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id, role=user.role)
        return user, tokens

    async def refresh_tokens(self, refresh_token: str) -> tuple[User, IssuedTokens]:
        """Exchange a refresh token for a new pair; the presented token is retired."""
        try:
            claims = self.codec.decode(refresh_token, token_type=REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_token_rejected", reason=exc.reason)
            raise InvalidRefreshTokenError("invalid refresh token") from exc
        grant = self.store.get_refresh_grant(claims.jti)
        if not grant or grant.user_id != claims.subject:
            raise InvalidRefreshTokenError("unknown refresh token")
        if grant.is_revoked:
            # Replay of a rotated token: retire every grant for the user
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=grant.user_id,
                jti=grant.jti,
            )
            self.store.revoke_user_refresh_grants(grant.user_id)
            raise InvalidRefreshTokenError("refresh token revoked")
        user = self.store.get_user(claims.subject)
        if not user or not user.is_active:
            raise InvalidRefreshTokenError("account unavailable")
        tokens = self._issue_tokens(user)
        self.store.revoke_refresh_grant(claims.jti, replaced_by=tokens.refresh_jti)
        self.logger.info("tokens_refreshed", user_id=user.id)
        return user, tokens

    async def revoke(self, refresh_token: str) -> None:
        """Retire a refresh token. Unknown or expired tokens are ignored."""
        try:
            claims = self.codec.decode(refresh_token, token_type=REFRESH)
        except TokenError as exc:
            self.logger.info("revoke_ignored", reason=exc.reason)
            return
        if self.store.revoke_refresh_grant(claims.jti):
            self.logger.info("refresh_token_revoked", user_id=claims.subject)

    async def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_grants(user_id)
        self.logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def verify_access_token(self, token: Optional[str]) -> tuple[User, TokenClaims]:
        """Decode an access token and resolve its user; raises AuthenticationError."""
        try:
            claims = self.codec.decode(token, token_type=ACCESS)
        except TokenError as exc:
            raise AuthenticationError(
                "token expired" if exc.reason == "expired_token" else "invalid token",
                detail={"reason": exc.reason},
            ) from exc
        user = self.store.get_user(claims.subject)
        if not user:
            raise AuthenticationError("user not found", detail={"reason": "user_not_found"})
        if not user.is_active:
            raise AuthenticationError("user disabled", detail={"reason": "user_inactive"})
        return user, claims

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError(
                "access token required", detail={"reason": "missing_token"}
            )
        user, claims = self.verify_access_token(token)
        if required_role and not self._role_allows(user.role, required_role):
            raise ForbiddenError(
                "insufficient permissions", detail={"required_role": required_role}
            )
        return AuthContext(
            user_id=user.id,
            role=user.role,
            display_name=user.display_name,
            department=user.department,
            email=user.email,
            token_jti=claims.jti,
        )

    def _role_allows(self, role: str, required: str) -> bool:
        return _ROLE_RANK.get(role, -1) >= _ROLE_RANK.get(required, len(_ROLE_RANK))

    def _issue_tokens(self, user: User) -> IssuedTokens:
        access_token, access_claims = self.codec.issue(
            user.id,
            user.role,
            token_type=ACCESS,
            ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            display_name=user.display_name,
            department=user.department,
            email=user.email,
        )
        refresh_token, refresh_claims = self.codec.issue(
            user.id,
            user.role,
            token_type=REFRESH,
            ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.store.save_refresh_grant(
            RefreshGrant(
                jti=refresh_claims.jti,
                user_id=user.id,
                issued_at=self._now(),
                expires_at=refresh_claims.expires_at,
            )
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
            refresh_jti=refresh_claims.jti,
        )
