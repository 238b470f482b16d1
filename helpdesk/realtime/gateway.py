from __future__ import annotations

from typing import Any, Mapping, Optional

from helpdesk.logging import get_logger
from helpdesk.realtime.hub import Connection, ConnectionTransport, NotificationHub
from helpdesk.service.auth import AuthContext
from helpdesk.service.errors import ConnectionRejected
from helpdesk.service.tokens import (
    ACCESS,
    EXPIRED_TOKEN,
    MALFORMED_TOKEN,
    MISSING_TOKEN,
    TokenCodec,
    TokenError,
    extract_bearer,
)

logger = get_logger(__name__)

# Handshake rejection reasons
REJECT_MISSING = "missing_token"
REJECT_MALFORMED = "malformed_token"
REJECT_EXPIRED = "expired_token"
REJECT_INVALID = "invalid_token"

_REASONS = {
    MISSING_TOKEN: REJECT_MISSING,
    MALFORMED_TOKEN: REJECT_MALFORMED,
    EXPIRED_TOKEN: REJECT_EXPIRED,
}


def handshake_token(payload: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Pull the bearer credential out of a handshake payload.

    ``{"auth": {"token": ...}}`` wins; otherwise an ``Authorization`` header
    under ``payload["headers"]`` is used with its ``Bearer`` prefix stripped.
    """
    if not isinstance(payload, Mapping):
        return None
    auth = payload.get("auth")
    if isinstance(auth, Mapping):
        token = auth.get("token")
        if isinstance(token, str) and token.strip():
            return token.strip()
    headers = payload.get("headers")
    if isinstance(headers, Mapping):
        for key, value in headers.items():
            if str(key).lower() == "authorization" and isinstance(value, str):
                return extract_bearer(value)
    return None


class ConnectionGateway:
    """Authenticates long-lived connections before they reach the hub."""

    def __init__(self, codec: TokenCodec, hub: NotificationHub) -> None:
        self.codec = codec
        self.hub = hub

    def authenticate(self, payload: Optional[Mapping[str, Any]]) -> AuthContext:
        token = handshake_token(payload)
        try:
            claims = self.codec.decode(token, token_type=ACCESS)
        except TokenError as exc:
            reason = _REASONS.get(exc.reason, REJECT_INVALID)
            logger.info("handshake_rejected", reason=reason, codec_reason=exc.reason)
            raise ConnectionRejected(reason) from exc
        return AuthContext(
            user_id=claims.subject,
            role=claims.role,
            display_name=claims.display_name,
            department=claims.department,
            email=claims.email,
            token_jti=claims.jti,
        )

    async def accept(
        self,
        connection_id: str,
        payload: Optional[Mapping[str, Any]],
        transport: ConnectionTransport,
    ) -> Connection:
        """Authenticate and register in one step; rejected handshakes never register."""
        identity = self.authenticate(payload)
        connection = await self.hub.register(
            connection_id, identity.user_id, transport, role=identity.role
        )
        logger.info(
            "handshake_accepted",
            connection_id=connection_id,
            identity_id=identity.user_id,
            role=identity.role,
        )
        return connection
