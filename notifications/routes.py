"""
Real-time channel — WebSocket sessions and reminder publishing.

Route prefix: /api/v1

Each session runs two tasks: a send loop draining the session's outbound
queue and a receive loop that only watches for the client going away.
Whichever finishes first tears the session down.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

from api.dependencies import get_connection_registry, get_gateway
from auth.dependencies import get_current_user_id
from config.settings import Settings
from connectors.errors import ConnectionAuthFailed
from notifications.gateway import NotificationEvent, NotificationGateway
from notifications.registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["notifications"])


class ReminderRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


# ── REST ───────────────────────────────────────────────────────────────


@router.post("/notifications/reminders")
async def publish_reminder(
    req: ReminderRequest,
    user_id: str = Depends(get_current_user_id),
    gateway: NotificationGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """Push a reminder to the caller's own live sessions."""
    report = await gateway.publish(NotificationEvent(target_user_id=user_id, payload=req.payload))
    return report.to_dict()


@router.get("/notifications/connections")
async def live_sessions(
    user_id: str = Depends(get_current_user_id),
    registry: ConnectionRegistry = Depends(get_connection_registry),
) -> Dict[str, Any]:
    """How many real-time sessions the caller currently has open."""
    return {"user_id": user_id, "live_sessions": len(registry.connections_for(user_id))}


# ── WebSocket ──────────────────────────────────────────────────────────


@router.websocket("/ws")
async def notifications_socket(websocket: WebSocket) -> None:
    settings: Settings = websocket.app.state.settings
    registry: ConnectionRegistry = websocket.app.state.connections

    try:
        connection = await _authenticate(websocket, registry, settings)
    except (ConnectionAuthFailed, asyncio.TimeoutError) as exc:
        logger.info("Rejected WebSocket session from %s: %s", websocket.client, exc or "auth timeout")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    except WebSocketDisconnect:
        return

    try:
        if websocket.client_state is WebSocketState.CONNECTING:
            await websocket.accept()
        await _serve(websocket, connection, settings)
    finally:
        registry.deregister(connection.connection_id)


def _handshake_token(websocket: WebSocket) -> Optional[str]:
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return websocket.query_params.get("token")


async def _authenticate(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    settings: Settings,
) -> Connection:
    """
    Handshake token → verified before the upgrade is accepted.
    No handshake token → accept, then require an ``auth`` message in time.
    """
    token = _handshake_token(websocket)
    if token is not None:
        return registry.authenticate_connection(token)

    await websocket.accept()
    token = await asyncio.wait_for(_read_auth_message(websocket), settings.ws_auth_timeout_seconds)
    return registry.authenticate_connection(token)


async def _read_auth_message(websocket: WebSocket) -> str:
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
    text = message.get("text")
    if text is None:
        raise ConnectionAuthFailed("first message must be a text frame")
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ConnectionAuthFailed("first message must be JSON") from exc
    if not isinstance(data, dict) or data.get("type") != "auth":
        raise ConnectionAuthFailed("first message must be an auth message")
    token = data.get("token")
    return token if isinstance(token, str) else ""


async def _serve(websocket: WebSocket, connection: Connection, settings: Settings) -> None:
    sender = asyncio.create_task(_send_loop(websocket, connection, settings.ws_send_timeout_seconds))
    receiver = asyncio.create_task(_receive_loop(websocket))
    done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    receiver_error = receiver.exception() if receiver in done else None
    if receiver_error is not None and not isinstance(receiver_error, WebSocketDisconnect):
        logger.warning("Receive loop for connection %s stopped: %r", connection.connection_id, receiver_error)

    if sender in done and sender.exception() is not None:
        logger.warning(
            "Send loop for connection %s stopped: %r", connection.connection_id, sender.exception(),
        )
        # The client may already be gone; closing is best effort.
        with contextlib.suppress(RuntimeError, OSError, WebSocketDisconnect):
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)


async def _send_loop(websocket: WebSocket, connection: Connection, send_timeout: float) -> None:
    while True:
        message = await connection.outbound.get()
        await asyncio.wait_for(websocket.send_json(message), timeout=send_timeout)


async def _receive_loop(websocket: WebSocket) -> None:
    # Inbound frames carry nothing for us; they only reveal a closed socket.
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
