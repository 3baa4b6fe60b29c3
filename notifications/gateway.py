"""
NotificationGateway — fan out application events to a user's live sessions.

``publish`` does not write to sockets itself: it puts the wire message on
each session's bounded outbound queue, and that session's send loop
(``notifications.routes``) delivers it.  A full queue only costs that one
session the event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from notifications.registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

REMINDER = "reminder"
SUPPORTED_EVENT_TYPES = frozenset({REMINDER})


@dataclass(frozen=True)
class NotificationEvent:
    target_user_id: str
    payload: Dict[str, Any]
    type: str = REMINDER
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.type not in SUPPORTED_EVENT_TYPES:
            raise ValueError(f"Unsupported event type: {self.type!r}")

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.type, "payload": self.payload}


@dataclass
class DeliveryReport:
    target_user_id: str
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_user_id": self.target_user_id,
            "delivered": len(self.delivered),
            "failed": len(self.failed),
        }


class NotificationGateway:
    def __init__(self, registry: ConnectionRegistry, *, publish_timeout: float = 1.0) -> None:
        self._registry = registry
        self._timeout = publish_timeout

    async def publish(self, event: NotificationEvent) -> DeliveryReport:
        """
        Offer ``event`` to every live session of its target user.

        Users without a live session get nothing; there is no backlog.
        """
        report = DeliveryReport(target_user_id=event.target_user_id)
        connections = self._registry.connections_for(event.target_user_id)
        if not connections:
            logger.debug("No live sessions for user %s; %s event dropped", event.target_user_id, event.type)
            return report

        message = event.to_message()
        outcomes = await asyncio.gather(
            *(self._offer(c, message) for c in connections),
            return_exceptions=True,
        )
        for connection, outcome in zip(connections, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Delivery to connection %s failed: %s", connection.connection_id, outcome,
                )
            (report.delivered if outcome is True else report.failed).append(connection.connection_id)

        logger.info(
            "Published %s to user %s: %d queued, %d failed",
            event.type, event.target_user_id, len(report.delivered), len(report.failed),
        )
        return report

    async def _offer(self, connection: Connection, message: Dict[str, Any]) -> bool:
        if not connection.is_open:
            return False
        try:
            await asyncio.wait_for(connection.outbound.put(message), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Outbound queue full for connection %s (user %s); event dropped",
                connection.connection_id, connection.user_id,
            )
            return False
        return True
