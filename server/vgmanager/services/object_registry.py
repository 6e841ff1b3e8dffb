"""Registry of externally visible objects and their publication events."""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from .websocket_service import websocket_manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

PublishedCallback = Callable[[str, Any], None]


class ObjectRegistry:
    """Publishes objects under paths and notifies typed listeners.

    Listeners connected for an entity type are invoked synchronously on the
    event loop for every object of that type that gets published.
    """

    def __init__(self) -> None:
        self._objects: Dict[str, Any] = {}
        self._listeners: Dict[int, Tuple[type, PublishedCallback]] = {}
        self._handler_ids = itertools.count(1)

    def publish(self, path: str, entity: Any) -> None:
        previous = self._objects.get(path)
        if previous is not None and previous is not entity:
            logger.warning("Replacing object already published at %s", path)
        self._objects[path] = entity
        logger.debug("Published %s at %s", type(entity).__name__, path)
        self._broadcast("published", path, entity)

        for handler_id, (entity_type, callback) in list(self._listeners.items()):
            if handler_id not in self._listeners or not isinstance(entity, entity_type):
                continue
            try:
                callback(path, entity)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Publication listener %d failed for %s", handler_id, path)

    def unpublish(self, path: str, entity: Any = None) -> bool:
        current = self._objects.get(path)
        if current is None or (entity is not None and current is not entity):
            return False
        del self._objects[path]
        logger.debug("Unpublished %s", path)
        self._broadcast("unpublished", path, current)
        return True

    def find(self, path: str, entity_type: Type[T]) -> Optional[T]:
        entity = self._objects.get(path)
        if isinstance(entity, entity_type):
            return entity
        return None

    def objects_of_type(self, entity_type: Type[T]) -> List[T]:
        return [entity for entity in self._objects.values() if isinstance(entity, entity_type)]

    def is_published(self, path: str) -> bool:
        return path in self._objects

    def connect(self, entity_type: type, callback: PublishedCallback) -> int:
        handler_id = next(self._handler_ids)
        self._listeners[handler_id] = (entity_type, callback)
        return handler_id

    def disconnect(self, handler_id: int) -> bool:
        return self._listeners.pop(handler_id, None) is not None

    def listener_count(self) -> int:
        return len(self._listeners)

    def _broadcast(self, action: str, path: str, entity: Any) -> None:
        data: Dict[str, Any] = {}
        to_info = getattr(entity, "to_info", None)
        if callable(to_info):
            data = to_info().model_dump(mode="json")
        websocket_manager.schedule_broadcast(
            {
                "type": "object",
                "action": action,
                "object_type": type(entity).__name__,
                "path": path,
                "data": data,
            },
            topic="objects",
        )
