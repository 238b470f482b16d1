from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from helpdesk.logging import get_logger

logger = get_logger(__name__)


class LogoutReason(str, Enum):
    USER_INITIATED = "user_initiated"
    RENEWAL_FAILED = "renewal_failed"
    INACTIVITY = "inactivity"
    REMOTE_LOGOUT = "remote_logout"


@dataclass(frozen=True)
class LoggedOut:
    reason: LogoutReason
    identity_id: Optional[str] = None


@dataclass(frozen=True)
class InactivityWarning:
    remaining_seconds: float


@dataclass(frozen=True)
class LoginRequired:
    """No usable session; the credential-entry surface should be shown."""

    reason: Optional[LogoutReason] = None


@dataclass(frozen=True)
class SessionRenewed:
    identity_id: str


Listener = Callable[[Any], None]


class SessionEvents:
    """Typed publish/subscribe channel owned by a session manager.

    Listeners subscribe to an event class and are called synchronously in
    subscription order. A failing listener is logged and does not stop
    delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: Dict[Type[Any], List[Listener]] = {}

    def subscribe(self, event_type: Type[Any], listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(event_type, []).append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, listener)

        return _unsubscribe

    def unsubscribe(self, event_type: Type[Any], listener: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def publish(self, event: Any) -> None:
        for listener in list(self._listeners.get(type(event), ())):
            try:
                listener(event)
            except Exception as exc:
                logger.error(
                    "session_event_listener_failed",
                    event_type=type(event).__name__,
                    error=str(exc),
                    exc_info=True,
                )
