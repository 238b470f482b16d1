from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from helpdesk.config import Settings
from helpdesk.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

# Failure reasons surfaced by TokenCodec.decode
MISSING_TOKEN = "missing_token"
MALFORMED_TOKEN = "malformed_token"
INVALID_SIGNATURE = "invalid_signature"
INVALID_CLAIMS = "invalid_claims"
EXPIRED_TOKEN = "expired_token"


class TokenError(Exception):
    """Bearer credential could not be verified."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    token_type: str
    expires_at: datetime
    jti: str
    display_name: Optional[str] = None
    department: Optional[str] = None
    email: Optional[str] = None


class TokenCodec:
    """HS256 bearer token encoder/decoder.

    Access and refresh tokens share the signing secret but carry distinct
    audiences, so a refresh token is never accepted where an access token is
    expected and vice versa.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_audience: str,
        refresh_audience: str,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audiences = {ACCESS: access_audience, REFRESH: refresh_audience}
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            access_audience=settings.jwt_access_audience,
            refresh_audience=settings.jwt_refresh_audience,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self,
        subject: str,
        role: str,
        *,
        token_type: str = ACCESS,
        ttl: timedelta,
        display_name: Optional[str] = None,
        department: Optional[str] = None,
        email: Optional[str] = None,
    ) -> tuple[str, TokenClaims]:
        """Sign a new token and return it together with its claims."""
        if token_type not in self.audiences:
            raise ValueError(f"unknown token type: {token_type}")
        exp = int(self._clock() + ttl.total_seconds())
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audiences[token_type],
            "sub": subject,
            "role": role,
            "token_type": token_type,
            "jti": jti,
            "exp": exp,
        }
        if display_name is not None:
            payload["name"] = display_name
        if department is not None:
            payload["department"] = department
        if email is not None:
            payload["email"] = email
        claims = TokenClaims(
            subject=subject,
            role=role,
            token_type=token_type,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=jti,
            display_name=display_name,
            department=department,
            email=email,
        )
        return self.encode(payload), claims

    def decode(self, token: Optional[str], *, token_type: str = ACCESS) -> TokenClaims:
        """Verify ``token`` and return its claims or raise ``TokenError``."""
        if not token:
            raise TokenError(MISSING_TOKEN)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(MALFORMED_TOKEN) from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            raise TokenError(MALFORMED_TOKEN) from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            # Only HS256 is accepted; anything else is algorithm confusion
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(INVALID_SIGNATURE)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenError(INVALID_SIGNATURE)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise TokenError(MALFORMED_TOKEN) from None
        if not isinstance(payload, dict):
            raise TokenError(MALFORMED_TOKEN)

        if payload.get("iss") != self.issuer:
            raise TokenError(INVALID_CLAIMS, "issuer mismatch")
        expected_aud = self.audiences.get(token_type)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == expected_aud
        elif isinstance(aud, list):
            valid_aud = expected_aud in aud
        else:
            valid_aud = False
        if not valid_aud or payload.get("token_type") != token_type:
            raise TokenError(INVALID_CLAIMS, "audience mismatch")
        subject = payload.get("sub")
        if not subject:
            raise TokenError(INVALID_CLAIMS, "subject missing")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(INVALID_CLAIMS, "expiry missing") from None
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenError(EXPIRED_TOKEN)

        return TokenClaims(
            subject=str(subject),
            role=str(payload.get("role") or "user"),
            token_type=token_type,
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti") or ""),
            display_name=payload.get("name"),
            department=payload.get("department"),
            email=payload.get("email"),
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None
