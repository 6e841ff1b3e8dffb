"""Discovery and lifetime management of volume groups."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Set

from ..core.entity_table import EntityTable
from ..core.errors import CommandError, FetchError
from ..core.inventory import coerce_str
from ..core.models import NotificationCategory, NotificationLevel
from .context import DaemonContext
from .job_service import JobHandle
from .logical_volume import LogicalVolume
from .volume_group import VolumeGroup

logger = logging.getLogger(__name__)


class VolumeGroupManager:
    """Keeps the set of :class:`VolumeGroup` entities in step with the system.

    A discovery pass asks the inventory helper for the current group names,
    creates entities for new ones, refreshes every known group and disposes
    of groups that are gone. Passes run periodically and after every job.
    """

    def __init__(self, context: Optional[DaemonContext] = None) -> None:
        self.context = context or DaemonContext.create_default()
        self.volume_groups: EntityTable[VolumeGroup] = EntityTable()
        self.last_refresh: Optional[datetime] = None
        self._discovery_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._pending: Set[asyncio.Task[List[str]]] = set()
        self._discovery_notification_key = "volume-group-discovery"
        self._started = False

    async def start(self) -> None:
        """Start the periodic discovery loop."""
        if self._started:
            return
        logger.info("Starting volume group manager")
        self._started = True
        self.context.jobs.add_completion_hook(self._on_job_completed)
        loop = asyncio.get_running_loop()
        self._refresh_task = loop.create_task(self._refresh_loop())

    async def stop(self) -> None:
        """Stop discovery, fail pending requests and dispose of all groups."""
        if not self._started:
            return
        logger.info("Stopping volume group manager")
        self._started = False
        self.context.jobs.remove_completion_hook(self._on_job_completed)

        tasks = list(self._pending)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
            self._refresh_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

        self.context.bridge.teardown()
        for group in list(self.volume_groups):
            await group.dispose()
        self.volume_groups.clear()
        self.context.notifications.clear_system_notification(self._discovery_notification_key)

    async def _refresh_loop(self) -> None:
        interval = max(1.0, float(self.context.settings.inventory_refresh_interval))
        while True:
            try:
                await self.refresh(reason="background")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.error("Volume group discovery failed: %s", exc)
            await asyncio.sleep(interval)

    async def refresh(self, reason: str = "manual") -> List[str]:
        """Run one discovery pass; returns the names of the known groups."""
        async with self._discovery_lock:
            logger.debug("Running volume group discovery (%s)", reason)

            if self.context.settings.scan_block_devices:
                try:
                    await self.context.blocks.scan(self.context.runner)
                except CommandError as exc:
                    logger.warning("Block device scan failed: %s", exc)

            argv = self.context.settings.get_lvm_helper_argv() + ["list"]
            try:
                payload = await self.context.runner.run_json(argv)
            except FetchError as exc:
                logger.warning("Failed to list LVM volume groups: %s", exc)
                self.context.notifications.upsert_system_notification(
                    self._discovery_notification_key,
                    title="Volume group discovery failed",
                    message=f"Failed to list volume groups: {exc}",
                    level=NotificationLevel.WARNING,
                    category=NotificationCategory.VOLUME_GROUP,
                )
                return self.volume_groups.names()

            if not isinstance(payload, list):
                logger.warning("Ignoring malformed volume group list: %r", payload)
                return self.volume_groups.names()

            self.context.notifications.clear_system_notification(
                self._discovery_notification_key
            )

            names = []
            for value in payload:
                name = coerce_str(value)
                if name and name not in names:
                    names.append(name)

            for name in names:
                group = self.volume_groups.get(name)
                if group is None:
                    group = self.volume_groups.insert(VolumeGroup(self.context, name))
                    logger.info("Discovered volume group %s", name)
                group.update()

            for name in self.volume_groups.names():
                if name not in names:
                    group = self.volume_groups.remove(name)
                    if group is not None:
                        await group.dispose()

            self.last_refresh = datetime.now(timezone.utc)
            return self.volume_groups.names()

    def _on_job_completed(self, handle: JobHandle) -> None:
        if not self._started:
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(self.refresh(reason=f"job {handle.job.operation}"))
        self._pending.add(task)
        task.add_done_callback(self._discard_pending)

    def _discard_pending(self, task: "asyncio.Task[List[str]]") -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Volume group discovery after job failed: %s", exc)

    def get_volume_group(self, name: str) -> Optional[VolumeGroup]:
        """Return the published group called ``name``."""
        group = self.volume_groups.get(name)
        if group is None or not group.published:
            return None
        return group

    def list_volume_groups(self) -> List[VolumeGroup]:
        return [group for group in self.volume_groups if group.published]

    def find_logical_volume(self, object_path: str) -> Optional[LogicalVolume]:
        return self.context.objects.find(object_path, LogicalVolume)


volume_group_manager = VolumeGroupManager()
