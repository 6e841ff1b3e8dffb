"""Logical volume entity."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..core.inventory import coerce_int, coerce_str
from ..core.lvm_names import build_object_path, decode_lvm_name
from ..core.models import LogicalVolumeInfo, VolumeType
from .progress_tracker import COPY_PERCENT_SCALE

if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .volume_group import VolumeGroup

logger = logging.getLogger(__name__)

POOL_SEGMENT_TYPES = frozenset({"thin-pool", "thin,pool"})
THIN_SEGMENT_TYPES = frozenset({"thin"})
SYNCING_SEGMENT_PREFIXES = ("mirror", "raid")


def _coerce_ratio(value: Any) -> Optional[float]:
    try:
        if value is None or value == "":
            return None
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return None


class LogicalVolume:
    """A visible logical volume owned by exactly one volume group.

    The snapshot record is kept as an opaque mapping that is replaced on
    every update; typed accessors read from it.
    """

    def __init__(self, group_name: str, group_path: str, name: str) -> None:
        self.name = name
        self.owner_name = group_name
        self.object_path = build_object_path(group_path, name)
        self.properties: Dict[str, Any] = {}
        self.pool_path: Optional[str] = None

    def __repr__(self) -> str:
        return f"<LogicalVolume {self.owner_name}/{self.name}>"

    def update(self, group: "VolumeGroup", info: Dict[str, Any]) -> bool:
        """Apply a snapshot record; returns True while a copy is syncing."""
        self.properties = dict(info)
        self.resolve_pool(group)

        segment_type = (coerce_str(info.get("type")) or "").lower()
        copy_percent = coerce_int(info.get("copy_percent"))
        return (
            segment_type.startswith(SYNCING_SEGMENT_PREFIXES)
            and copy_percent is not None
            and copy_percent < COPY_PERCENT_SCALE
        )

    def resolve_pool(self, group: "VolumeGroup") -> None:
        pool_name = coerce_str(self.properties.get("pool"))
        pool = group.logical_volumes.get(pool_name) if pool_name else None
        self.pool_path = pool.object_path if pool else None

    @property
    def display_name(self) -> str:
        return decode_lvm_name(self.name)

    @property
    def uuid(self) -> Optional[str]:
        return coerce_str(self.properties.get("uuid"))

    @property
    def size(self) -> int:
        return coerce_int(self.properties.get("size"), default=0) or 0

    @property
    def volume_type(self) -> VolumeType:
        segment_type = (coerce_str(self.properties.get("type")) or "").lower()
        if segment_type in POOL_SEGMENT_TYPES:
            return VolumeType.POOL
        if segment_type in THIN_SEGMENT_TYPES:
            return VolumeType.THIN
        return VolumeType.BLOCK

    @property
    def origin(self) -> Optional[str]:
        return coerce_str(self.properties.get("origin"))

    def to_info(self) -> LogicalVolumeInfo:
        return LogicalVolumeInfo(
            object_path=self.object_path,
            name=self.name,
            display_name=self.display_name,
            volume_group=self.owner_name,
            uuid=self.uuid,
            size=self.size,
            volume_type=self.volume_type,
            pool=self.pool_path,
            origin=self.origin,
            data_allocated_ratio=_coerce_ratio(self.properties.get("data_allocated_ratio")),
            metadata_allocated_ratio=_coerce_ratio(
                self.properties.get("metadata_allocated_ratio")
            ),
        )
