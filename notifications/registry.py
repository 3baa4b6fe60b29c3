"""
ConnectionRegistry — live, authenticated real-time sessions keyed by user.

Mutated only on connect (``authenticate_connection``) and disconnect
(``deregister``); the gateway only reads snapshots.  All access happens on
the event loop thread, and none of the methods await, so each call is
atomic with respect to other coroutines.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from connectors.errors import ConnectionAuthFailed

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One WebSocket session; bound to a single user for its whole life."""

    user_id: str
    outbound: "asyncio.Queue[Dict[str, Any]]"
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    established_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: ConnectionState = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED


class ConnectionRegistry:
    def __init__(
        self,
        token_verifier: Callable[[str], str],
        *,
        queue_size: int = 100,
    ) -> None:
        """
        ``token_verifier`` maps a bearer token to a user id and raises
        ``ValueError`` for anything it does not accept.
        """
        self._verify = token_verifier
        self._queue_size = queue_size
        self._by_id: Dict[str, Connection] = {}
        self._by_user: Dict[str, Dict[str, Connection]] = {}

    def authenticate_connection(self, raw_token: Optional[str]) -> Connection:
        """Verify the bearer token and register a new session for its user."""
        if not raw_token:
            raise ConnectionAuthFailed("missing bearer token")
        try:
            user_id = self._verify(raw_token)
        except ValueError as exc:
            raise ConnectionAuthFailed(f"invalid or expired token: {exc}") from exc
        return self._register(user_id)

    def deregister(self, connection_id: str) -> bool:
        """Drop a session.  Returns False if it was already gone."""
        connection = self._by_id.pop(connection_id, None)
        if connection is None:
            return False
        connection.state = ConnectionState.CLOSED
        sessions = self._by_user.get(connection.user_id)
        if sessions is not None:
            sessions.pop(connection_id, None)
            if not sessions:
                del self._by_user[connection.user_id]
        logger.info(
            "Session closed: user=%s connection=%s (%d live)",
            connection.user_id, connection_id, len(self._by_id),
        )
        return True

    def connections_for(self, user_id: str) -> List[Connection]:
        """Snapshot of the user's live sessions."""
        return list(self._by_user.get(user_id, {}).values())

    def __len__(self) -> int:
        return len(self._by_id)

    def _register(self, user_id: str) -> Connection:
        connection = Connection(
            user_id=user_id,
            outbound=asyncio.Queue(maxsize=self._queue_size),
        )
        connection.state = ConnectionState.AUTHENTICATED
        self._by_id[connection.connection_id] = connection
        self._by_user.setdefault(user_id, {})[connection.connection_id] = connection
        logger.info(
            "Session authenticated: user=%s connection=%s (%d live)",
            user_id, connection.connection_id, len(self._by_id),
        )
        return connection
