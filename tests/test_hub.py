"""Tests for the notification hub registry and fan-out."""

import asyncio

import pytest

from helpdesk.realtime.hub import ConnectionState, ConnectionStateError, NotificationHub
from helpdesk.realtime.notifications import (
    NotificationMessage,
    TargetScope,
    new_comment,
    room_for_ticket,
    system_alert,
)


class RecordingTransport:
    def __init__(self):
        self.frames = []

    async def send_json(self, data):
        self.frames.append(data)

    def events(self, name):
        return [f["data"] for f in self.frames if f["event"] == name]


class BrokenTransport:
    def __init__(self):
        self.attempts = 0

    async def send_json(self, data):
        self.attempts += 1
        raise ConnectionResetError("socket closed")


def _message(scope: TargetScope, title: str = "hello") -> NotificationMessage:
    return NotificationMessage(kind="test", title=title, body="body", target_scope=scope)


@pytest.fixture
def hub():
    return NotificationHub()


class TestRegistry:
    async def test_register_marks_identity_online(self, hub):
        transport = RecordingTransport()
        conn = await hub.register("c1", "alice", transport, role="user")

        assert conn.state is ConnectionState.AUTHENTICATED
        assert hub.is_online("alice")
        assert hub.stats().connected_identity_ids == ("alice",)

    async def test_multiple_connections_per_identity(self, hub):
        await hub.register("c1", "alice", RecordingTransport())
        await hub.register("c2", "alice", RecordingTransport())

        assert hub.stats().connected_identity_count == 1
        assert [c.connection_id for c in hub.connections_for("alice")] == ["c1", "c2"]

        await hub.unregister("c1")
        assert hub.is_online("alice")
        await hub.unregister("c2")
        assert not hub.is_online("alice")
        assert hub.stats().connected_identity_count == 0

    async def test_unregister_is_terminal(self, hub):
        await hub.register("c1", "alice", RecordingTransport())
        conn = await hub.unregister("c1")

        assert conn.state is ConnectionState.DISCONNECTED
        assert conn.rooms == set()
        assert await hub.unregister("c1") is None
        with pytest.raises(ConnectionStateError):
            hub.join_room("c1", "ticket_1")

    async def test_duplicate_connection_id_rejected(self, hub):
        await hub.register("c1", "alice", RecordingTransport())
        with pytest.raises(ConnectionStateError):
            await hub.register("c1", "bob", RecordingTransport())

    async def test_register_without_identity_rejected(self, hub):
        with pytest.raises(ConnectionStateError):
            await hub.register("c1", "", RecordingTransport())
        assert hub.stats().connected_identity_count == 0

    async def test_stats_pushed_on_membership_change(self, hub):
        alice = RecordingTransport()
        await hub.register("c1", "alice", alice)
        await hub.register("c2", "bob", RecordingTransport())
        await hub.unregister("c2")

        counts = [s["connected_identity_count"] for s in alice.events("user_stats")]
        assert counts == [1, 2, 1]
        assert alice.events("user_stats")[1]["connected_identity_ids"] == ["alice", "bob"]


class TestRooms:
    async def test_room_delivery_only_to_joined_connections(self, hub):
        joined, other = RecordingTransport(), RecordingTransport()
        await hub.register("c1", "alice", joined)
        await hub.register("c2", "bob", other)
        room = room_for_ticket(42)

        assert hub.join_room("c1", room) is True
        delivered = await hub.notify_room(room, _message(TargetScope.room(room)))

        assert delivered == 1
        assert len(joined.events("notification")) == 1
        assert other.events("notification") == []

    async def test_join_and_leave_are_idempotent(self, hub):
        await hub.register("c1", "alice", RecordingTransport())

        assert hub.join_room("c1", "ticket_1") is True
        assert hub.join_room("c1", "ticket_1") is False
        assert hub.leave_room("c1", "ticket_1") is True
        assert hub.leave_room("c1", "ticket_1") is False
        assert hub.room_members("ticket_1") == []

    async def test_membership_is_per_connection(self, hub):
        tab1, tab2 = RecordingTransport(), RecordingTransport()
        await hub.register("c1", "alice", tab1)
        await hub.register("c2", "alice", tab2)
        hub.join_room("c1", "ticket_7")

        await hub.notify_room("ticket_7", _message(TargetScope.room("ticket_7")))

        assert len(tab1.events("notification")) == 1
        assert tab2.events("notification") == []

    async def test_emit_room_excludes_sender(self, hub):
        sender, peer = RecordingTransport(), RecordingTransport()
        await hub.register("c1", "alice", sender)
        await hub.register("c2", "bob", peer)
        hub.join_room("c1", "ticket_3")
        hub.join_room("c2", "ticket_3")

        await hub.emit_room("ticket_3", "user_typing", {"identity_id": "alice"}, exclude="c1")

        assert peer.events("user_typing") == [{"identity_id": "alice"}]
        assert sender.events("user_typing") == []


class TestDelivery:
    async def test_notify_reaches_every_connection_of_identity(self, hub):
        tab1, tab2, bob = RecordingTransport(), RecordingTransport(), RecordingTransport()
        await hub.register("c1", "alice", tab1)
        await hub.register("c2", "alice", tab2)
        await hub.register("c3", "bob", bob)

        delivered = await hub.notify("alice", _message(TargetScope.identity("alice")))

        assert delivered == 2
        assert tab1.events("notification")[0]["title"] == "hello"
        assert tab2.events("notification")[0]["scope"] == "identity"
        assert bob.events("notification") == []

    async def test_notify_offline_identity_is_dropped(self, hub):
        assert await hub.notify("nobody", _message(TargetScope.identity("nobody"))) == 0

    async def test_broadcast(self, hub):
        transports = [RecordingTransport() for _ in range(3)]
        for i, transport in enumerate(transports):
            await hub.register(f"c{i}", f"user-{i}", transport)

        assert await hub.broadcast(system_alert("maintenance at 22:00")) == 3
        assert all(len(t.events("notification")) == 1 for t in transports)

    async def test_failed_transport_does_not_block_others(self, hub):
        broken, healthy = BrokenTransport(), RecordingTransport()
        await hub.register("c1", "alice", broken)
        await hub.register("c2", "bob", healthy)

        assert await hub.broadcast(_message(TargetScope.broadcast())) == 1
        assert hub.get("c1").failed is True
        attempts = broken.attempts

        # Later deliveries skip the failed connection entirely
        assert await hub.broadcast(_message(TargetScope.broadcast())) == 1
        assert broken.attempts == attempts
        assert len(healthy.events("notification")) == 2

    async def test_slow_transport_does_not_serialize_fan_out(self, hub):
        release = asyncio.Event()
        order = []

        class SlowTransport:
            async def send_json(self, data):
                if data["event"] == "notification":
                    await release.wait()
                    order.append("slow")

        class FastTransport:
            async def send_json(self, data):
                if data["event"] == "notification":
                    order.append("fast")
                    release.set()

        await hub.register("c1", "alice", SlowTransport())
        await hub.register("c2", "bob", FastTransport())

        await asyncio.wait_for(hub.broadcast(_message(TargetScope.broadcast())), 1.0)
        assert order == ["fast", "slow"]

    async def test_dispatch_routes_by_scope(self, hub):
        alice, bob = RecordingTransport(), RecordingTransport()
        await hub.register("c1", "alice", alice)
        await hub.register("c2", "bob", bob)
        hub.join_room("c2", room_for_ticket(9))

        await hub.dispatch(_message(TargetScope.identity("alice"), "direct"))
        await hub.dispatch(new_comment(9, 1, "looks good"))
        await hub.dispatch(_message(TargetScope.broadcast(), "all"))

        assert [n["title"] for n in alice.events("notification")] == ["direct", "all"]
        assert [n["title"] for n in bob.events("notification")] == ["New comment", "all"]

    async def test_send_to_single_connection(self, hub):
        transport = RecordingTransport()
        await hub.register("c1", "alice", transport)

        assert await hub.send_to("c1", "user_stats", {"x": 1}) is True
        assert await hub.send_to("missing", "user_stats", {"x": 1}) is False
