from __future__ import annotations

import threading
from typing import Optional

from helpdesk.config import get_settings, reset_settings_cache
from helpdesk.logging import get_logger
from helpdesk.realtime.gateway import ConnectionGateway
from helpdesk.realtime.hub import NotificationHub
from helpdesk.service.auth import AuthService
from helpdesk.service.tokens import TokenCodec
from helpdesk.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.store = MemoryStore()
        self.codec = TokenCodec.from_settings(self.settings)
        self.auth = AuthService(self.store, self.codec, self.settings)
        self.hub = NotificationHub()
        self.gateway = ConnectionGateway(self.codec, self.hub)
        logger.info(
            "runtime_initialized",
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            issuer=self.settings.jwt_issuer,
        )

    async def close(self) -> None:
        stats = self.hub.stats()
        logger.info(
            "runtime_closing",
            connected_identities=stats.connected_identity_count,
        )


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
