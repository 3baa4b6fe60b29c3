"""
Tests for the connection registry and notification gateway (no sockets).
"""

import asyncio

import pytest

from auth.jwt import create_token, decode_token
from connectors.errors import ConnectionAuthFailed
from notifications.gateway import NotificationEvent, NotificationGateway
from notifications.registry import ConnectionRegistry, ConnectionState

SECRET = "test-jwt-secret"


def _registry(queue_size=100) -> ConnectionRegistry:
    return ConnectionRegistry(lambda t: decode_token(t, secret=SECRET), queue_size=queue_size)


def _token(user_id: str) -> str:
    return create_token(user_id, secret=SECRET, expiry_seconds=60)


class TestConnectionRegistry:
    def test_authenticate_registers_under_user(self):
        registry = _registry()
        conn = registry.authenticate_connection(_token("user-a"))

        assert conn.user_id == "user-a"
        assert conn.state is ConnectionState.AUTHENTICATED
        assert registry.connections_for("user-a") == [conn]
        assert registry.connections_for("user-b") == []

    @pytest.mark.parametrize("token", [None, "", "garbage", "e30=.deadbeef"])
    def test_bad_tokens_rejected(self, token):
        registry = _registry()
        with pytest.raises(ConnectionAuthFailed):
            registry.authenticate_connection(token)
        assert len(registry) == 0

    def test_expired_token_rejected(self):
        registry = _registry()
        expired = create_token("user-a", secret=SECRET, expiry_seconds=-10)
        with pytest.raises(ConnectionAuthFailed):
            registry.authenticate_connection(expired)

    def test_token_signed_with_other_secret_rejected(self):
        registry = _registry()
        with pytest.raises(ConnectionAuthFailed):
            registry.authenticate_connection(create_token("user-a", secret="other", expiry_seconds=60))

    def test_double_deregister_is_noop(self):
        registry = _registry()
        conn = registry.authenticate_connection(_token("user-a"))

        assert registry.deregister(conn.connection_id) is True
        assert registry.deregister(conn.connection_id) is False
        assert conn.state is ConnectionState.CLOSED
        assert registry.connections_for("user-a") == []
        assert len(registry) == 0

    def test_snapshot_is_detached(self):
        registry = _registry()
        conn = registry.authenticate_connection(_token("user-a"))
        snapshot = registry.connections_for("user-a")

        registry.deregister(conn.connection_id)
        assert snapshot == [conn]


class TestNotificationGateway:
    @pytest.mark.asyncio
    async def test_publish_reaches_only_target_user(self):
        registry = _registry()
        a1 = registry.authenticate_connection(_token("user-a"))
        a2 = registry.authenticate_connection(_token("user-a"))
        b1 = registry.authenticate_connection(_token("user-b"))
        gateway = NotificationGateway(registry)

        report = await gateway.publish(NotificationEvent("user-a", {"idea_id": 7, "text": "Follow up"}))

        assert sorted(report.delivered) == sorted([a1.connection_id, a2.connection_id])
        assert report.failed == []
        expected = {"type": "reminder", "payload": {"idea_id": 7, "text": "Follow up"}}
        assert a1.outbound.get_nowait() == expected
        assert a2.outbound.get_nowait() == expected
        assert b1.outbound.empty()

    @pytest.mark.asyncio
    async def test_no_backlog_for_offline_user(self):
        registry = _registry()
        gateway = NotificationGateway(registry)

        report = await gateway.publish(NotificationEvent("user-a", {"text": "missed"}))
        assert report.to_dict() == {"target_user_id": "user-a", "delivered": 0, "failed": 0}

        conn = registry.authenticate_connection(_token("user-a"))
        assert conn.outbound.empty()

    @pytest.mark.asyncio
    async def test_deregistered_connection_gets_nothing(self):
        registry = _registry()
        conn = registry.authenticate_connection(_token("user-a"))
        registry.deregister(conn.connection_id)

        report = await NotificationGateway(registry).publish(NotificationEvent("user-a", {}))
        assert report.delivered == []
        assert conn.outbound.empty()

    @pytest.mark.asyncio
    async def test_full_queue_does_not_block_others(self):
        registry = _registry(queue_size=1)
        stuck = registry.authenticate_connection(_token("user-a"))
        healthy = registry.authenticate_connection(_token("user-a"))
        stuck.outbound.put_nowait({"type": "reminder", "payload": {"n": 0}})
        gateway = NotificationGateway(registry, publish_timeout=0.05)

        report = await asyncio.wait_for(gateway.publish(NotificationEvent("user-a", {"n": 1})), timeout=1)

        assert report.failed == [stuck.connection_id]
        assert report.delivered == [healthy.connection_id]
        assert healthy.outbound.get_nowait() == {"type": "reminder", "payload": {"n": 1}}

    def test_unsupported_event_type(self):
        with pytest.raises(ValueError):
            NotificationEvent("user-a", {}, type="broadcast")
