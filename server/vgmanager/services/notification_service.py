"""Notification management service for recoverable warnings."""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.models import Notification, NotificationCategory, NotificationLevel

logger = logging.getLogger(__name__)


class NotificationService:
    """Keeps keyed system notifications and broadcasts changes."""

    def __init__(self):
        self.notifications: Dict[str, Notification] = {}
        self._system_keys: Dict[str, str] = {}
        self._websocket_manager = None

    def set_websocket_manager(self, manager):
        """Set the WebSocket manager for broadcasting notifications."""
        self._websocket_manager = manager
        logger.info("WebSocket manager set for notification service")

    async def start(self):
        logger.info("Starting notification service")
        self.notifications = {}
        self._system_keys = {}

    async def stop(self):
        logger.info("Stopping notification service")

    def upsert_system_notification(
        self,
        key: str,
        *,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.WARNING,
        category: NotificationCategory = NotificationCategory.SYSTEM,
        related_entity: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        """Create or refresh the notification identified by ``key``."""
        existing_id = self._system_keys.get(key)
        existing = self.notifications.get(existing_id) if existing_id else None
        if existing is not None:
            existing.title = title
            existing.message = message
            existing.level = level
            existing.read = False
            existing.metadata = dict(metadata or {})
            self._schedule_broadcast(existing, action="updated")
            return existing

        notification = Notification(
            id=str(uuid.uuid4()),
            title=title,
            message=message,
            level=level,
            category=category,
            created_at=datetime.utcnow(),
            related_entity=related_entity,
            metadata=dict(metadata or {}),
        )
        self.notifications[notification.id] = notification
        self._system_keys[key] = notification.id
        logger.info("Created notification: %s", title)
        self._schedule_broadcast(notification, action="created")
        return notification

    def clear_system_notification(self, key: str) -> bool:
        notification_id = self._system_keys.pop(key, None)
        if notification_id is None:
            return False
        notification = self.notifications.pop(notification_id, None)
        if notification is not None:
            self._schedule_broadcast(notification, action="deleted")
        return notification is not None

    def get_all_notifications(self, limit: Optional[int] = None) -> List[Notification]:
        """Get all notifications, newest first."""
        notifications = sorted(
            self.notifications.values(), key=lambda n: n.created_at, reverse=True
        )
        if limit:
            notifications = notifications[:limit]
        return notifications

    def mark_notification_read(self, notification_id: str) -> bool:
        notification = self.notifications.get(notification_id)
        if notification is None:
            return False
        notification.read = True
        self._schedule_broadcast(notification, action="updated")
        return True

    def _schedule_broadcast(self, notification: Notification, action: str = "updated"):
        if not self._websocket_manager:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._broadcast_notification(notification, action))
        task.add_done_callback(self._handle_broadcast_task_exception)

    async def _broadcast_notification(self, notification: Notification, action: str):
        await self._websocket_manager.broadcast(
            {
                "type": "notification",
                "action": action,
                "data": notification.model_dump(mode="json"),
            },
            topic="notifications",
        )

    def _handle_broadcast_task_exception(self, task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc:  # pragma: no cover - defensive logging
            logger.error("Error broadcasting notification via WebSocket: %s", exc)


# Global notification service instance
notification_service = NotificationService()
