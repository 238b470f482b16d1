"""Notification messages and the ticket-event helpers that build them.

Messages are immutable and never persisted. Delivery is fire-and-forget:
a message addressed to an identity or room with no live connection is
dropped.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ScopeKind(str, Enum):
    IDENTITY = "identity"
    ROOM = "room"
    BROADCAST = "broadcast"


@dataclass(frozen=True)
class TargetScope:
    kind: ScopeKind
    target_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.kind is ScopeKind.BROADCAST and self.target_id is not None:
            raise ValueError("broadcast scope takes no target")
        if self.kind is not ScopeKind.BROADCAST and not self.target_id:
            raise ValueError(f"{self.kind.value} scope requires a target id")

    @classmethod
    def identity(cls, identity_id: str) -> "TargetScope":
        return cls(ScopeKind.IDENTITY, identity_id)

    @classmethod
    def room(cls, room_id: str) -> "TargetScope":
        return cls(ScopeKind.ROOM, room_id)

    @classmethod
    def broadcast(cls) -> "TargetScope":
        return cls(ScopeKind.BROADCAST)


def room_for_ticket(ticket_id: Any) -> str:
    return f"ticket_{ticket_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NotificationMessage:
    kind: str
    title: str
    body: str
    target_scope: TargetScope
    priority: str = "normal"
    url: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.created_at.isoformat(),
            "type": self.kind,
            "title": self.title,
            "message": self.body,
            "priority": self.priority,
            "scope": self.target_scope.kind.value,
        }
        if self.target_scope.target_id is not None:
            payload["target"] = self.target_scope.target_id
        for key in ("url", "icon", "color"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


PRIORITY_COLORS = {
    "low": "#6c757d",
    "medium": "#ffc107",
    "high": "#fd7e14",
    "critical": "#dc3545",
}

STATUS_COLORS = {
    "open": "#007bff",
    "in_progress": "#ffc107",
    "pending": "#fd7e14",
    "resolved": "#28a745",
    "closed": "#6c757d",
}

ALERT_COLORS = {
    "info": "#17a2b8",
    "warning": "#ffc107",
    "error": "#dc3545",
    "success": "#28a745",
}


def _scope_for(assignee_id: Optional[str], ticket_id: Any) -> TargetScope:
    if assignee_id:
        return TargetScope.identity(assignee_id)
    return TargetScope.room(room_for_ticket(ticket_id))


def new_ticket(
    ticket_id: Any, title: str, priority: str, *, assignee_id: Optional[str] = None
) -> NotificationMessage:
    """A ticket was opened; goes to the assignee or to everyone when unassigned."""
    scope = TargetScope.identity(assignee_id) if assignee_id else TargetScope.broadcast()
    return NotificationMessage(
        kind="new_ticket",
        title="New ticket",
        body=f"Ticket #{ticket_id}: {title}",
        priority=priority,
        target_scope=scope,
        url=f"/tickets/{ticket_id}",
        icon="fas fa-ticket-alt",
        color=PRIORITY_COLORS.get(priority, "#6c757d"),
    )


def ticket_status_changed(
    ticket_id: Any,
    old_status: str,
    new_status: str,
    *,
    recipient_id: Optional[str] = None,
) -> NotificationMessage:
    return NotificationMessage(
        kind="status_change",
        title="Ticket status changed",
        body=f"Ticket #{ticket_id}: {old_status} -> {new_status}",
        target_scope=_scope_for(recipient_id, ticket_id),
        url=f"/tickets/{ticket_id}",
        icon="fas fa-exchange-alt",
        color=STATUS_COLORS.get(new_status, "#007bff"),
    )


def new_comment(
    ticket_id: Any,
    comment_id: Any,
    content: str,
    *,
    recipient_id: Optional[str] = None,
) -> NotificationMessage:
    excerpt = content if len(content) <= 50 else content[:50] + "..."
    return NotificationMessage(
        kind="new_comment",
        title="New comment",
        body=f"Ticket #{ticket_id}: {excerpt}",
        target_scope=_scope_for(recipient_id, ticket_id),
        url=f"/tickets/{ticket_id}#comment-{comment_id}",
        icon="fas fa-comment",
        color="#17a2b8",
    )


def ticket_assigned(ticket_id: Any, assignee_id: str) -> NotificationMessage:
    return NotificationMessage(
        kind="assignment",
        title="Ticket assigned",
        body=f"Ticket #{ticket_id} was assigned to you",
        target_scope=TargetScope.identity(assignee_id),
        url=f"/tickets/{ticket_id}",
        icon="fas fa-user-check",
        color="#28a745",
    )


def system_alert(message: str, level: str = "info") -> NotificationMessage:
    return NotificationMessage(
        kind="system_alert",
        title="System alert",
        body=message,
        priority=level,
        target_scope=TargetScope.broadcast(),
        icon="fas fa-exclamation-triangle",
        color=ALERT_COLORS.get(level, "#17a2b8"),
    )
