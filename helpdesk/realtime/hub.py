from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from helpdesk.logging import get_logger
from helpdesk.realtime.notifications import NotificationMessage, ScopeKind

logger = get_logger(__name__)

NOTIFICATION_EVENT = "notification"
STATS_EVENT = "user_stats"


class ConnectionTransport(Protocol):
    async def send_json(self, data: Any) -> None: ...


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


class ConnectionStateError(RuntimeError):
    """Operation not allowed for the connection's current state."""


@dataclass
class Connection:
    connection_id: str
    transport: ConnectionTransport
    identity_id: Optional[str] = None
    role: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: ConnectionState = ConnectionState.UNAUTHENTICATED
    failed: bool = False


@dataclass(frozen=True)
class HubStats:
    connected_identity_count: int
    connected_identity_ids: tuple[str, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "connected_identity_count": self.connected_identity_count,
            "connected_identity_ids": list(self.connected_identity_ids),
        }


class NotificationHub:
    """Registry of authenticated connections and room memberships.

    Registry mutations run to completion without suspending, so no other
    coroutine observes a half-applied registration. Fan-out snapshots its
    targets first and then awaits every send concurrently; a failing
    transport is marked and skipped without affecting the other targets.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._by_identity: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}

    # registry
    async def register(
        self,
        connection_id: str,
        identity_id: str,
        transport: ConnectionTransport,
        *,
        role: Optional[str] = None,
    ) -> Connection:
        if not identity_id:
            raise ConnectionStateError("cannot register a connection without an identity")
        if connection_id in self._connections:
            raise ConnectionStateError(f"connection {connection_id} already registered")
        connection = Connection(
            connection_id=connection_id,
            transport=transport,
            identity_id=identity_id,
            role=role,
            state=ConnectionState.AUTHENTICATED,
        )
        self._connections[connection_id] = connection
        identity_connections = self._by_identity.setdefault(identity_id, set())
        first_connection = not identity_connections
        identity_connections.add(connection_id)
        logger.info(
            "connection_registered",
            connection_id=connection_id,
            identity_id=identity_id,
            identity_connections=len(identity_connections),
        )
        if first_connection:
            logger.info("identity_online", identity_id=identity_id)
        await self._push_stats()
        return connection

    async def unregister(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        connection.state = ConnectionState.DISCONNECTED
        for room_id in connection.rooms:
            members = self._rooms.get(room_id)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room_id]
        connection.rooms.clear()
        identity_connections = self._by_identity.get(connection.identity_id or "")
        if identity_connections is not None:
            identity_connections.discard(connection_id)
            if not identity_connections:
                del self._by_identity[connection.identity_id]
                logger.info("identity_offline", identity_id=connection.identity_id)
        logger.info(
            "connection_unregistered",
            connection_id=connection_id,
            identity_id=connection.identity_id,
        )
        await self._push_stats()
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connections_for(self, identity_id: str) -> List[Connection]:
        return [
            self._connections[cid]
            for cid in sorted(self._by_identity.get(identity_id, ()))
            if cid in self._connections
        ]

    def is_online(self, identity_id: str) -> bool:
        return bool(self._by_identity.get(identity_id))

    def stats(self) -> HubStats:
        identity_ids = tuple(sorted(self._by_identity))
        return HubStats(
            connected_identity_count=len(identity_ids),
            connected_identity_ids=identity_ids,
        )

    # rooms
    def join_room(self, connection_id: str, room_id: str) -> bool:
        """Add the connection to a room; returns False if it was already a member."""
        connection = self._connections.get(connection_id)
        if connection is None or connection.state is not ConnectionState.AUTHENTICATED:
            raise ConnectionStateError(f"connection {connection_id} is not authenticated")
        if room_id in connection.rooms:
            return False
        connection.rooms.add(room_id)
        self._rooms.setdefault(room_id, set()).add(connection_id)
        logger.info("room_joined", connection_id=connection_id, room_id=room_id)
        return True

    def leave_room(self, connection_id: str, room_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or room_id not in connection.rooms:
            return False
        connection.rooms.discard(room_id)
        members = self._rooms.get(room_id)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
        logger.info("room_left", connection_id=connection_id, room_id=room_id)
        return True

    def room_members(self, room_id: str) -> List[Connection]:
        return [
            self._connections[cid]
            for cid in sorted(self._rooms.get(room_id, ()))
            if cid in self._connections
        ]

    # delivery
    async def notify(self, identity_id: str, message: NotificationMessage) -> int:
        delivered = await self._deliver(
            self.connections_for(identity_id), NOTIFICATION_EVENT, message.to_payload()
        )
        logger.info(
            "notification_sent",
            scope="identity",
            identity_id=identity_id,
            notification_id=message.id,
            delivered=delivered,
        )
        return delivered

    async def notify_room(self, room_id: str, message: NotificationMessage) -> int:
        delivered = await self._deliver(
            self.room_members(room_id), NOTIFICATION_EVENT, message.to_payload()
        )
        logger.info(
            "notification_sent",
            scope="room",
            room_id=room_id,
            notification_id=message.id,
            delivered=delivered,
        )
        return delivered

    async def broadcast(self, message: NotificationMessage) -> int:
        delivered = await self._deliver(
            list(self._connections.values()), NOTIFICATION_EVENT, message.to_payload()
        )
        logger.info(
            "notification_sent",
            scope="broadcast",
            notification_id=message.id,
            delivered=delivered,
        )
        return delivered

    async def dispatch(self, message: NotificationMessage) -> int:
        """Route a message by its target scope."""
        scope = message.target_scope
        if scope.kind is ScopeKind.IDENTITY:
            return await self.notify(scope.target_id, message)
        if scope.kind is ScopeKind.ROOM:
            return await self.notify_room(scope.target_id, message)
        return await self.broadcast(message)

    async def emit_room(
        self,
        room_id: str,
        event: str,
        data: Any,
        *,
        exclude: Optional[str] = None,
    ) -> int:
        targets = [c for c in self.room_members(room_id) if c.connection_id != exclude]
        return await self._deliver(targets, event, data)

    async def send_to(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return await self._deliver([connection], event, data) == 1

    def mark_read(self, connection_id: str, notification_id: Any) -> None:
        connection = self._connections.get(connection_id)
        logger.info(
            "notification_marked_read",
            connection_id=connection_id,
            identity_id=connection.identity_id if connection else None,
            notification_id=notification_id,
        )

    async def _push_stats(self) -> None:
        await self._deliver(
            list(self._connections.values()), STATS_EVENT, self.stats().to_payload()
        )

    async def _deliver(self, targets: Iterable[Connection], event: str, data: Any) -> int:
        live = [
            c
            for c in targets
            if not c.failed and c.state is ConnectionState.AUTHENTICATED
        ]
        if not live:
            return 0
        frame = {"event": event, "data": data}
        results = await asyncio.gather(*(self._send(c, frame) for c in live))
        return sum(1 for ok in results if ok)

    async def _send(self, connection: Connection, frame: dict[str, Any]) -> bool:
        try:
            await connection.transport.send_json(frame)
        except Exception as exc:
            connection.failed = True
            logger.warning(
                "notification_delivery_failed",
                connection_id=connection.connection_id,
                identity_id=connection.identity_id,
                event=frame.get("event"),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True
