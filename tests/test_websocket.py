"""Tests for the /ws/notifications channel.

Covers the handshake, room membership driven by client frames, typing
relay, and delivery of notifications submitted over HTTP.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from helpdesk import app as app_module
from helpdesk.api.routes import WS_CLOSE_UNAUTHORIZED
from helpdesk.service.runtime import get_runtime

PASSWORD = "CorrectHorse-42!"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def accounts():
    auth = get_runtime().auth
    return {
        "una": auth.create_user("una@helpdesk.example", PASSWORD, display_name="Una"),
        "vic": auth.create_user("vic@helpdesk.example", PASSWORD, display_name="Vic"),
        "tom": auth.create_user(
            "tom@helpdesk.example", PASSWORD, display_name="Tom", role="technician"
        ),
    }


def _token(client, name):
    response = client.post(
        "/api/auth/login",
        json={"email": f"{name}@helpdesk.example", "password": PASSWORD},
    )
    return response.json()["data"]["tokens"]["access_token"]


def _handshake(ws, token):
    ws.send_json({"auth": {"token": token}})
    stats = ws.receive_json()
    connect = ws.receive_json()
    assert stats["event"] == "user_stats"
    assert connect["event"] == "connect"
    return connect["data"]


def _sync(ws):
    """Round-trip a get_stats frame so earlier frames are known to be handled."""
    ws.send_json({"event": "get_stats"})
    while True:
        frame = ws.receive_json()
        if frame["event"] == "user_stats":
            return frame["data"]


class TestHandshake:
    def test_valid_token_connects(self, client, accounts):
        token = _token(client, "una")
        with client.websocket_connect("/ws/notifications") as ws:
            ws.send_json({"auth": {"token": token}})
            stats = ws.receive_json()
            connect = ws.receive_json()

            assert stats == {
                "event": "user_stats",
                "data": {
                    "connected_identity_count": 1,
                    "connected_identity_ids": [accounts["una"].id],
                },
            }
            assert connect["event"] == "connect"
            assert connect["data"]["identity_id"] == accounts["una"].id
            assert connect["data"]["role"] == "user"
            assert get_runtime().hub.is_online(accounts["una"].id)

        assert not get_runtime().hub.is_online(accounts["una"].id)

    def test_authorization_header_fallback(self, client, accounts):
        token = _token(client, "una")
        with client.websocket_connect(
            "/ws/notifications", headers={"Authorization": f"Bearer {token}"}
        ) as ws:
            ws.send_json({})
            assert ws.receive_json()["event"] == "user_stats"
            assert ws.receive_json()["data"]["identity_id"] == accounts["una"].id

    @pytest.mark.parametrize(
        "payload,reason",
        [
            ({}, "missing_token"),
            ({"auth": {"token": "garbage"}}, "malformed_token"),
        ],
    )
    def test_rejected_handshake(self, client, payload, reason):
        with client.websocket_connect("/ws/notifications") as ws:
            ws.send_json(payload)
            frame = ws.receive_json()

            assert frame["event"] == "error"
            assert frame["data"]["code"] == reason
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == WS_CLOSE_UNAUTHORIZED

        assert get_runtime().hub.stats().connected_identity_count == 0

    def test_expired_token_rejected(self, client, accounts):
        token, _ = get_runtime().codec.issue(
            accounts["una"].id, "user", ttl=timedelta(minutes=-10)
        )
        with client.websocket_connect("/ws/notifications") as ws:
            ws.send_json({"auth": {"token": token}})

            assert ws.receive_json()["data"]["code"] == "expired_token"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == WS_CLOSE_UNAUTHORIZED


class TestClientEvents:
    def test_room_notification_reaches_joined_connection(self, client, accounts):
        una_token = _token(client, "una")
        tom_token = _token(client, "tom")
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, una_token)
            ws.send_json({"event": "join_ticket", "data": {"ticket_id": 15}})
            _sync(ws)

            response = client.post(
                "/api/notifications",
                headers={"Authorization": f"Bearer {tom_token}"},
                json={
                    "kind": "status_change",
                    "title": "Ticket status updated",
                    "body": "Ticket #15: open -> resolved",
                    "target": {"scope": "room", "id": "ticket_15"},
                },
            )
            assert response.json()["data"]["delivered"] == 1

            frame = ws.receive_json()
            assert frame["event"] == "notification"
            assert frame["data"]["title"] == "Ticket status updated"
            assert frame["data"]["scope"] == "room"
            assert frame["data"]["target"] == "ticket_15"

    def test_leave_ticket_stops_delivery(self, client, accounts):
        una_token = _token(client, "una")
        tom_token = _token(client, "tom")
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, una_token)
            ws.send_json({"event": "join_ticket", "data": {"ticket_id": "15"}})
            ws.send_json({"event": "leave_ticket", "data": {"ticket_id": "15"}})
            _sync(ws)

            response = client.post(
                "/api/notifications",
                headers={"Authorization": f"Bearer {tom_token}"},
                json={
                    "kind": "comment",
                    "title": "New comment",
                    "body": "hello",
                    "target": {"scope": "room", "id": "ticket_15"},
                },
            )
            assert response.json()["data"]["delivered"] == 0

    def test_identity_notification(self, client, accounts):
        una_token = _token(client, "una")
        tom_token = _token(client, "tom")
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, una_token)
            client.post(
                "/api/notifications",
                headers={"Authorization": f"Bearer {tom_token}"},
                json={
                    "kind": "assignment",
                    "title": "Ticket assigned",
                    "body": "Ticket #15 is yours",
                    "priority": "high",
                    "target": {"scope": "identity", "id": accounts["una"].id},
                },
            )

            frame = ws.receive_json()
            assert frame["event"] == "notification"
            assert frame["data"]["priority"] == "high"

    def test_typing_relayed_to_other_room_members(self, client, accounts):
        una_token = _token(client, "una")
        vic_token = _token(client, "vic")
        with client.websocket_connect("/ws/notifications") as una, client.websocket_connect(
            "/ws/notifications"
        ) as vic:
            _handshake(una, una_token)
            _handshake(vic, vic_token)
            una.send_json({"event": "join_ticket", "data": {"ticket_id": 7}})
            vic.send_json({"event": "join_ticket", "data": {"ticket_id": 7}})
            _sync(una)
            _sync(vic)

            una.send_json({"event": "typing", "data": {"ticket_id": 7, "is_typing": True}})

            while True:
                frame = vic.receive_json()
                if frame["event"] == "user_typing":
                    break
            assert frame["data"] == {
                "identity_id": accounts["una"].id,
                "ticket_id": "7",
                "is_typing": True,
            }

    def test_get_stats(self, client, accounts):
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, _token(client, "una"))
            stats = _sync(ws)
            assert stats["connected_identity_count"] == 1

    def test_unknown_event(self, client, accounts):
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, _token(client, "una"))
            ws.send_json({"event": "dance"})

            frame = ws.receive_json()
            assert frame == {
                "event": "error",
                "data": {"code": "unknown_event", "message": "unsupported event: dance"},
            }

    def test_join_without_ticket_id(self, client, accounts):
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, _token(client, "una"))
            ws.send_json({"event": "join_ticket", "data": {}})

            assert ws.receive_json()["data"]["code"] == "validation_error"

    def test_invalid_json_closes_connection(self, client, accounts):
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, _token(client, "una"))
            ws.send_text("{not json")

            assert ws.receive_json()["data"]["code"] == "invalid_json"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1003

        assert get_runtime().hub.stats().connected_identity_count == 0

    def test_binary_frame_closes_connection(self, client, accounts):
        with client.websocket_connect("/ws/notifications") as ws:
            _handshake(ws, _token(client, "una"))
            ws.send_bytes(b"\x00\x01")

            error = ws.receive_json()
            assert error["event"] == "error"
            assert error["data"]["code"] == "invalid_json"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 1003

        assert get_runtime().hub.stats().connected_identity_count == 0
