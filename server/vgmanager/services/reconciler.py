"""Application of inventory snapshots to a volume group."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict

from ..core.inventory import (
    InventorySnapshot,
    coerce_int,
    coerce_str,
    lv_is_pvmove_volume,
    lv_is_visible,
)
from .context import DaemonContext
from .logical_volume import LogicalVolume
from .progress_tracker import EMPTY_DEVICE_OPERATION, normalise_copy_percent

if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .volume_group import VolumeGroup

logger = logging.getLogger(__name__)


class SnapshotReconciler:
    """Turns a snapshot into create/update/remove operations.

    The order of the steps is part of the contract: group fields, group
    publication, per-volume create/update, stale removal, block
    associations. Clients therefore never see a logical volume whose group
    is not yet published.
    """

    def __init__(self, context: DaemonContext) -> None:
        self._context = context

    def reconcile(self, group: "VolumeGroup", snapshot: InventorySnapshot) -> bool:
        """Apply ``snapshot`` to ``group``; returns whether polling is needed."""
        needs_polling = False

        group.apply_group_fields(snapshot.group)
        group.publish_if_pending()

        seen: Dict[str, LogicalVolume] = {}
        for record in snapshot.logical_volumes:
            name = record["name"]

            if self._update_operations(name, record):
                needs_polling = True
            if lv_is_pvmove_volume(name):
                needs_polling = True

            if not lv_is_visible(name):
                continue

            volume = group.logical_volumes.get(name)
            if volume is None:
                volume = LogicalVolume(group.name, group.object_path, name)
                if volume.update(group, record):
                    needs_polling = True
                group.logical_volumes.insert(volume)
                self._context.objects.publish(volume.object_path, volume)
                logger.info("Discovered logical volume %s/%s", group.name, name)
            elif volume.update(group, record):
                needs_polling = True
            seen[name] = volume

        # Thin volumes may be listed ahead of their pool.
        for volume in seen.values():
            volume.resolve_pool(group)

        for name in group.logical_volumes.names():
            if name not in seen:
                logger.info("Logical volume %s/%s disappeared", group.name, name)
                group.logical_volumes.remove(name)

        group.needs_polling = needs_polling

        self._context.blocks.update_for_group(
            group.name,
            group.object_path,
            {name: volume.object_path for name, volume in seen.items()},
            snapshot.physical_volumes_by_device(),
        )
        return needs_polling

    def _update_operations(self, name: str, record: Dict[str, Any]) -> bool:
        """Attribute pvmove progress; returns True when a move is running."""
        if not lv_is_pvmove_volume(name):
            return False
        move_pv = coerce_str(record.get("move_pv"))
        copy_percent = coerce_int(record.get("copy_percent"))
        if move_pv is None or copy_percent is None:
            return False
        fraction = normalise_copy_percent(copy_percent)
        if fraction is None:
            return False
        self._context.progress.attribute_progress(EMPTY_DEVICE_OPERATION, move_pv, fraction)
        return True
