from __future__ import annotations

import asyncio
import json
from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, WebSocket, WebSocketDisconnect

from helpdesk.api.schemas import (
    AuthResponse,
    Envelope,
    HubStatsResponse,
    LoginRequest,
    LogoutRequest,
    NotificationRequest,
    NotificationResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from helpdesk.config import Role
from helpdesk.logging import bind_connection_context, clear_connection_context, get_logger
from helpdesk.realtime.hub import Connection, ConnectionStateError
from helpdesk.realtime.notifications import NotificationMessage, TargetScope, room_for_ticket
from helpdesk.service.auth import AuthContext, IssuedTokens
from helpdesk.service.errors import ConnectionRejected, NotFoundError
from helpdesk.service.runtime import Runtime, get_runtime
from helpdesk.storage.models import User

logger = get_logger(__name__)

router = APIRouter()

# Close code for rejected websocket handshakes
WS_CLOSE_UNAUTHORIZED = 4401


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_technician_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization, required_role=Role.TECHNICIAN.value
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role,
        department=user.department,
        is_active=user.is_active,
        last_login_at=user.last_login_at,
    )


def _auth_envelope(user: User, tokens: IssuedTokens) -> Envelope:
    return Envelope(
        success=True,
        data=AuthResponse(
            user=_user_response(user),
            tokens=TokenResponse(**tokens.as_dict()),
        ).model_dump(mode="json"),
    )


def _load_user(runtime: Runtime, principal: AuthContext) -> User:
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return user


@router.post("/api/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: invalid credentials
        423: too many failed attempts, account temporarily locked
    """
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    return _auth_envelope(user, tokens)


@router.get("/api/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = _load_user(runtime, principal)
    return Envelope(
        success=True,
        data={"user": _user_response(user).model_dump(mode="json")},
    )


@router.post("/api/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    """Rotate the refresh token; the presented one stops working."""
    runtime = get_runtime()
    user, tokens = await runtime.auth.refresh_tokens(body.refresh_token)
    return _auth_envelope(user, tokens)


@router.post("/api/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: Optional[LogoutRequest] = None):
    runtime = get_runtime()
    if body and body.refresh_token:
        await runtime.auth.revoke(body.refresh_token)
    return Envelope(success=True, data={"logged_out": True})


@router.get("/api/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = _load_user(runtime, principal)
    return Envelope(success=True, data=_user_response(user).model_dump(mode="json"))


@router.post("/api/notifications", response_model=Envelope, tags=["notifications"])
async def send_notification(
    body: NotificationRequest, principal: AuthContext = Depends(get_technician_user)
):
    runtime = get_runtime()
    if body.target.scope == "identity":
        scope = TargetScope.identity(body.target.id)
    elif body.target.scope == "room":
        scope = TargetScope.room(body.target.id)
    else:
        scope = TargetScope.broadcast()
    message = NotificationMessage(
        kind=body.kind,
        title=body.title,
        body=body.body,
        priority=body.priority,
        target_scope=scope,
        url=body.url,
        icon=body.icon,
        color=body.color,
    )
    delivered = await runtime.hub.dispatch(message)
    logger.info(
        "notification_submitted",
        sender_id=principal.user_id,
        notification_id=message.id,
        scope=scope.kind.value,
        delivered=delivered,
    )
    return Envelope(
        success=True,
        data=NotificationResponse(
            id=message.id,
            scope=scope.kind.value,
            target=scope.target_id,
            delivered=delivered,
        ).model_dump(),
    )


@router.get("/api/notifications/stats", response_model=Envelope, tags=["notifications"])
async def notification_stats(principal: AuthContext = Depends(get_user)):
    stats = get_runtime().hub.stats()
    return Envelope(
        success=True,
        data=HubStatsResponse(
            connected_identity_count=stats.connected_identity_count,
            connected_identity_ids=list(stats.connected_identity_ids),
        ).model_dump(),
    )


def _ticket_id(data: Any) -> Optional[str]:
    value = data.get("ticket_id") if isinstance(data, dict) else data
    if value is None or isinstance(value, (dict, list, bool)) or str(value) == "":
        return None
    return str(value)


class UnreadableFrame(Exception):
    """A websocket frame that is not a JSON text message."""


async def _receive_frame(ws: WebSocket) -> Any:
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    text = message.get("text")
    if text is None:
        raise UnreadableFrame("binary frames are not accepted")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise UnreadableFrame("invalid JSON frame") from exc


async def _send_error(ws: WebSocket, code: str, message: str) -> None:
    await ws.send_json({"event": "error", "data": {"code": code, "message": message}})


async def _handle_client_event(
    runtime: Runtime, ws: WebSocket, connection: Connection, frame: Any
) -> None:
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        await _send_error(ws, "invalid_frame", "expected {event, data}")
        return
    event = frame["event"]
    data = frame.get("data")
    hub = runtime.hub
    cid = connection.connection_id

    if event in ("join_ticket", "leave_ticket", "typing"):
        ticket_id = _ticket_id(data)
        if ticket_id is None:
            await _send_error(ws, "validation_error", "ticket_id required")
            return
        room_id = room_for_ticket(ticket_id)
        if event == "join_ticket":
            hub.join_room(cid, room_id)
        elif event == "leave_ticket":
            hub.leave_room(cid, room_id)
        else:
            is_typing = bool(data.get("is_typing", True)) if isinstance(data, dict) else True
            await hub.emit_room(
                room_id,
                "user_typing",
                {
                    "identity_id": connection.identity_id,
                    "ticket_id": ticket_id,
                    "is_typing": is_typing,
                },
                exclude=cid,
            )
    elif event == "mark_notification_read":
        notification_id = data.get("notification_id") if isinstance(data, dict) else data
        hub.mark_read(cid, notification_id)
    elif event == "get_stats":
        await hub.send_to(cid, "user_stats", hub.stats().to_payload())
    else:
        await _send_error(ws, "unknown_event", f"unsupported event: {event}")


@router.websocket("/ws/notifications")
async def websocket_notifications(ws: WebSocket):
    """Real-time notification channel.

    The first frame must carry the access token as ``{"auth": {"token": ...}}``;
    an ``Authorization`` header on the upgrade request is used when it does not.
    """
    runtime = get_runtime()
    await ws.accept()
    connection_id = str(uuid4())
    connection: Optional[Connection] = None
    try:
        try:
            init = await asyncio.wait_for(
                _receive_frame(ws), timeout=runtime.settings.ws_handshake_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.info("websocket_handshake_timeout", connection_id=connection_id)
            await ws.close(code=WS_CLOSE_UNAUTHORIZED)
            return
        payload = dict(init) if isinstance(init, dict) else {}
        header = ws.headers.get("authorization")
        if header and "headers" not in payload:
            payload["headers"] = {"authorization": header}
        try:
            connection = await runtime.gateway.accept(connection_id, payload, ws)
        except ConnectionRejected as exc:
            await _send_error(ws, exc.reason, "authentication failed")
            await ws.close(code=WS_CLOSE_UNAUTHORIZED)
            return
        bind_connection_context(connection_id, connection.identity_id)
        await ws.send_json(
            {
                "event": "connect",
                "data": {
                    "connection_id": connection_id,
                    "identity_id": connection.identity_id,
                    "role": connection.role,
                },
            }
        )
        while True:
            frame = await _receive_frame(ws)
            try:
                await _handle_client_event(runtime, ws, connection, frame)
            except ConnectionStateError as exc:
                await _send_error(ws, "invalid_state", str(exc))
    except WebSocketDisconnect:
        pass
    except UnreadableFrame as exc:
        logger.warning(
            "websocket_invalid_json", connection_id=connection_id, reason=str(exc)
        )
        try:
            await _send_error(ws, "invalid_json", str(exc))
        except Exception:
            pass
        await ws.close(code=1003)
    except Exception as exc:
        logger.error(
            "unhandled_websocket_error",
            connection_id=connection_id,
            error_type=type(exc).__name__,
        )
        try:
            await _send_error(ws, "server_error", "an internal error occurred")
        except Exception:
            pass  # connection may already be closed
        await ws.close(code=1011)
    finally:
        if connection is not None:
            await runtime.hub.unregister(connection_id)
        clear_connection_context()
