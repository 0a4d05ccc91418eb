"""Delivery of check-in status changes to the requesting parent.

The engine only knows :class:`NotificationPort`; the transport is picked by the
composition root from ``NOTIFICATION_BACKEND``.
"""
from __future__ import annotations
import abc
import logging
import uuid

from fastapi import WebSocket

from ..core.config import Settings
from ..core.nats import publish_status
from ..models import CheckInRequestStatus
from ..schemas import CheckInStatusNotification

logger = logging.getLogger(__name__)


class NotificationPort(abc.ABC):
    @abc.abstractmethod
    async def notify(
        self,
        requester_id: uuid.UUID,
        status: CheckInRequestStatus,
        details: CheckInStatusNotification,
    ) -> None:
        """Best-effort, at-most-once delivery. May raise; callers log and move on."""


class NullNotifier(NotificationPort):
    async def notify(self, requester_id, status, details) -> None:
        logger.debug(f"Notification for {requester_id} dropped (status={status.value})")


class NatsNotifier(NotificationPort):
    async def notify(self, requester_id, status, details) -> None:
        await publish_status(str(requester_id), details.model_dump(mode="json"))


class ConnectionHub:
    """Open WebSocket connections keyed by user id."""

    def __init__(self):
        self.user_connections: dict[uuid.UUID, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, user_id: uuid.UUID) -> None:
        await websocket.accept()
        self.user_connections.setdefault(user_id, []).append(websocket)
        logger.info(f"User {user_id} subscribed to check-in status updates")

    def disconnect(self, websocket: WebSocket, user_id: uuid.UUID) -> None:
        conns = self.user_connections.get(user_id)
        if not conns:
            return
        if websocket in conns:
            conns.remove(websocket)
        if not conns:
            del self.user_connections[user_id]

    def connection_count(self, user_id: uuid.UUID) -> int:
        return len(self.user_connections.get(user_id, []))

    async def send_to_user(self, user_id: uuid.UUID, message: dict) -> int:
        """Send to every open connection of ``user_id``; returns how many got it."""
        delivered = 0
        for connection in list(self.user_connections.get(user_id, [])):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping broken WebSocket for user {user_id}: {e}")
                self.disconnect(connection, user_id)
        return delivered


hub = ConnectionHub()


class WebSocketNotifier(NotificationPort):
    def __init__(self, connection_hub: ConnectionHub = hub):
        self.hub = connection_hub

    async def notify(self, requester_id, status, details) -> None:
        message = {"type": "checkin_status", **details.model_dump(mode="json")}
        delivered = await self.hub.send_to_user(requester_id, message)
        if not delivered:
            logger.info(f"No open connection for user {requester_id}; {status.value} update not delivered")


def build_notifier(settings: Settings) -> NotificationPort:
    backend = settings.notification_backend
    if backend == "nats":
        return NatsNotifier()
    if backend == "websocket":
        return WebSocketNotifier()
    if backend != "none":
        logger.warning(f"Unknown NOTIFICATION_BACKEND {settings.notification_backend!r}; notifications disabled")
    return NullNotifier()
