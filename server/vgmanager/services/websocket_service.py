"""WebSocket service for real-time object, job and notification updates."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

KNOWN_TOPICS = frozenset({"objects", "jobs", "notifications", "all"})


class ConnectionManager:
    """Manages WebSocket connections and topic broadcasts."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        # client_id -> set of topics
        self.subscriptions: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str) -> bool:
        """Accept and register a new WebSocket connection."""
        try:
            await websocket.accept()
        except Exception as exc:
            logger.error("Error connecting WebSocket client %s: %s", client_id, exc)
            return False

        async with self._lock:
            self.active_connections[client_id] = websocket
            self.subscriptions[client_id] = set()
        logger.info("WebSocket client connected: %s", client_id)

        await self.send_personal_message(client_id, {
            "type": "connection",
            "status": "connected",
            "client_id": client_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return True

    async def disconnect(self, client_id: str):
        """Remove a WebSocket connection."""
        async with self._lock:
            self.active_connections.pop(client_id, None)
            self.subscriptions.pop(client_id, None)
        logger.info("WebSocket client disconnected: %s", client_id)

    async def subscribe(self, client_id: str, topics: Iterable[str]):
        accepted = [topic for topic in topics if topic in KNOWN_TOPICS]
        async with self._lock:
            if client_id in self.subscriptions:
                self.subscriptions[client_id].update(accepted)
        return accepted

    async def unsubscribe(self, client_id: str, topics: Iterable[str]):
        async with self._lock:
            if client_id in self.subscriptions:
                self.subscriptions[client_id].difference_update(topics)

    async def send_personal_message(self, client_id: str, message: dict):
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except Exception as exc:
            logger.error("Error sending message to %s: %s", client_id, exc)
            await self.disconnect(client_id)

    async def broadcast(self, message: Dict[str, Any], topic: Optional[str] = None):
        """Send ``message`` to every client subscribed to ``topic`` (or all clients)."""
        async with self._lock:
            if topic:
                targets = [
                    (client_id, self.active_connections.get(client_id))
                    for client_id, topics in self.subscriptions.items()
                    if topic in topics or "all" in topics
                ]
            else:
                targets = list(self.active_connections.items())

        disconnected = []
        for client_id, websocket in targets:
            if websocket is None:
                continue
            try:
                await websocket.send_json(message)
            except Exception as exc:
                logger.error("Error broadcasting to %s: %s", client_id, exc)
                disconnected.append(client_id)

        for client_id in disconnected:
            await self.disconnect(client_id)

    def schedule_broadcast(self, message: Dict[str, Any], topic: Optional[str] = None) -> None:
        """Fire-and-forget broadcast from synchronous event-loop code."""
        if not self.active_connections:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.broadcast(message, topic=topic))
        task.add_done_callback(_log_broadcast_failure)

    async def get_connection_count(self) -> int:
        async with self._lock:
            return len(self.active_connections)

    async def handle_client_message(self, client_id: str, message: Any):
        """Handle subscribe/unsubscribe/ping messages from a client."""
        if not isinstance(message, dict):
            logger.warning("Invalid message type from client %s: %s", client_id, type(message))
            return

        message_type = message.get("type")
        topics = message.get("topics") or []
        if message_type == "subscribe":
            accepted = await self.subscribe(client_id, topics)
            await self.send_personal_message(client_id, {
                "type": "subscription",
                "status": "subscribed",
                "topics": accepted,
            })
        elif message_type == "unsubscribe":
            await self.unsubscribe(client_id, topics)
            await self.send_personal_message(client_id, {
                "type": "subscription",
                "status": "unsubscribed",
                "topics": topics,
            })
        elif message_type == "ping":
            await self.send_personal_message(client_id, {
                "type": "pong",
                "timestamp": datetime.utcnow().isoformat(),
            })
        else:
            logger.warning("Unknown message type %r from client %s", message_type, client_id)


def _log_broadcast_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:  # pragma: no cover - defensive logging
        logger.error("WebSocket broadcast failed: %s", exc)


# Global WebSocket connection manager
websocket_manager = ConnectionManager()
