"""
End-to-end tests for the real-time channel through the ASGI app.
"""

import asyncio
import time
from unittest.mock import patch

import pytest
from starlette.websockets import WebSocket, WebSocketDisconnect

from auth.jwt import create_token
from conftest import bearer, register


def _wait_for_sessions(client, token, expected, attempts=100):
    for _ in range(attempts):
        resp = client.get("/api/v1/notifications/connections", headers=bearer(token))
        if resp.json()["live_sessions"] == expected:
            return
        time.sleep(0.01)
    raise AssertionError(f"expected {expected} live sessions")


class TestWebSocketAuth:
    def test_query_token_receives_reminder(self, client):
        user = register(client)

        with client.websocket_connect(f"/api/v1/ws?token={user['token']}") as ws:
            resp = client.post(
                "/api/v1/notifications/reminders",
                json={"payload": {"idea_id": 42, "text": "Ship it"}},
                headers=bearer(user["token"]),
            )
            assert resp.status_code == 200
            assert resp.json()["delivered"] == 1

            assert ws.receive_json() == {
                "type": "reminder",
                "payload": {"idea_id": 42, "text": "Ship it"},
            }

    def test_header_token_accepted(self, client):
        user = register(client)

        with client.websocket_connect("/api/v1/ws", headers=bearer(user["token"])):
            _wait_for_sessions(client, user["token"], 1)

    def test_invalid_token_closed_with_policy_violation(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/v1/ws?token=not-a-token"):
                pass
        assert exc_info.value.code == 1008

    def test_expired_token_closed(self, client, settings):
        user = register(client)
        expired = create_token(user["user_id"], secret=settings.jwt_secret, expiry_seconds=-1)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/v1/ws?token={expired}"):
                pass
        assert exc_info.value.code == 1008

    def test_first_message_auth(self, client):
        user = register(client)

        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "auth", "token": user["token"]})
            _wait_for_sessions(client, user["token"], 1)

            client.post(
                "/api/v1/notifications/reminders",
                json={"payload": {"text": "hello"}},
                headers=bearer(user["token"]),
            )
            assert ws.receive_json() == {"type": "reminder", "payload": {"text": "hello"}}

    def test_first_message_must_be_auth(self, client):
        with client.websocket_connect("/api/v1/ws") as ws:
            ws.send_json({"type": "subscribe"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008

    @pytest.mark.parametrize("frame", [b"\x00\x01", "not json", '{"type": "auth", "token": 42}'])
    def test_malformed_first_frame_closed(self, client, frame):
        with client.websocket_connect("/api/v1/ws") as ws:
            if isinstance(frame, bytes):
                ws.send_bytes(frame)
            else:
                ws.send_text(frame)
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_auth_message_timeout(self, make_client, settings):
        client = make_client(settings.model_copy(update={"ws_auth_timeout_seconds": 0.1}))

        with client.websocket_connect("/api/v1/ws") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008


class TestSessionLifecycle:
    def test_reminder_only_reaches_its_user(self, client):
        ada = register(client, "ada@example.com")
        grace = register(client, "grace@example.com")

        with client.websocket_connect(f"/api/v1/ws?token={ada['token']}") as ada_ws, \
                client.websocket_connect(f"/api/v1/ws?token={grace['token']}") as grace_ws:
            client.post(
                "/api/v1/notifications/reminders",
                json={"payload": {"for": "grace"}},
                headers=bearer(grace["token"]),
            )
            client.post(
                "/api/v1/notifications/reminders",
                json={"payload": {"for": "ada"}},
                headers=bearer(ada["token"]),
            )
            assert ada_ws.receive_json()["payload"] == {"for": "ada"}
            assert grace_ws.receive_json()["payload"] == {"for": "grace"}

    def test_disconnect_deregisters(self, client):
        user = register(client)

        with client.websocket_connect(f"/api/v1/ws?token={user['token']}"):
            _wait_for_sessions(client, user["token"], 1)
        _wait_for_sessions(client, user["token"], 0)

        resp = client.post(
            "/api/v1/notifications/reminders",
            json={"payload": {}},
            headers=bearer(user["token"]),
        )
        assert resp.json() == {"target_user_id": user["user_id"], "delivered": 0, "failed": 0}

    def test_publish_requires_bearer(self, client):
        resp = client.post("/api/v1/notifications/reminders", json={"payload": {}})
        assert resp.status_code == 401

    def test_stalled_send_closes_session(self, make_client, settings):
        client = make_client(settings.model_copy(update={"ws_send_timeout_seconds": 0.1}))
        user = register(client)

        async def _stalled_send(self, data, mode="text"):
            await asyncio.sleep(3600)

        with patch.object(WebSocket, "send_json", _stalled_send):
            with client.websocket_connect(f"/api/v1/ws?token={user['token']}") as ws:
                _wait_for_sessions(client, user["token"], 1)
                resp = client.post(
                    "/api/v1/notifications/reminders",
                    json={"payload": {"text": "never arrives"}},
                    headers=bearer(user["token"]),
                )
                assert resp.json()["delivered"] == 1

                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()
            assert exc_info.value.code == 1011

        _wait_for_sessions(client, user["token"], 0)
