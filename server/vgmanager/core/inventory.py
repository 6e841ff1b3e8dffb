"""Inventory snapshot parsing and logical volume classification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import FetchError, ReconcileSkip
from .lvm_names import RESERVED_LV_PREFIXES, RESERVED_LV_SUBSTRINGS

logger = logging.getLogger(__name__)

PVMOVE_PREFIX = "pvmove"

# Group level fields copied onto the volume group, keyed by snapshot field.
GROUP_FIELDS = {
    "name": "name",
    "uuid": "uuid",
    "size": "size",
    "free-size": "free_size",
    "extent-size": "extent_size",
}


def lv_is_pvmove_volume(name: Optional[str]) -> bool:
    return bool(name) and name.startswith(PVMOVE_PREFIX)


def lv_is_visible(name: Optional[str]) -> bool:
    """Return True when a logical volume should be exposed externally.

    Mirror logs and images, RAID images and metadata, thin pool data and
    metadata, pvmove temporaries and snapshot origins are internal.
    """
    if not name:
        return False
    if name.startswith(RESERVED_LV_PREFIXES):
        return False
    return not any(marker in name for marker in RESERVED_LV_SUBSTRINGS)


def coerce_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        if value is None or value == "" or isinstance(value, bool):
            return default
        return int(value)
    except (TypeError, ValueError):
        logger.debug("Unable to coerce %r to int; using default %s", value, default)
        return default


def coerce_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class InventorySnapshot:
    """One point-in-time dump of a volume group and its children.

    Not retained past a single reconciliation pass.
    """

    group: Dict[str, Any] = field(default_factory=dict)
    logical_volumes: List[Dict[str, Any]] = field(default_factory=list)
    physical_volumes: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any, group_name: Optional[str] = None) -> "InventorySnapshot":
        """Normalise the helper's decoded output.

        Malformed child records are dropped individually; a payload that is
        not a mapping at all is a fetch failure.
        """
        if not isinstance(payload, dict):
            raise FetchError(
                group_name,
                f"Inventory helper returned {type(payload).__name__}, expected an object",
            )

        group = {key: payload[key] for key in GROUP_FIELDS if key in payload}

        lvs: List[Dict[str, Any]] = []
        for record in payload.get("lvs") or []:
            try:
                lvs.append(_validate_record(record, "name"))
            except ReconcileSkip as exc:
                logger.warning("Dropping logical volume record of %s: %s", group_name, exc)

        pvs: List[Dict[str, Any]] = []
        for record in payload.get("pvs") or []:
            try:
                pvs.append(_validate_record(record, "device"))
            except ReconcileSkip as exc:
                logger.warning("Dropping physical volume record of %s: %s", group_name, exc)

        return cls(group=group, logical_volumes=lvs, physical_volumes=pvs)

    def logical_volume_names(self) -> List[str]:
        return [record["name"] for record in self.logical_volumes]

    def physical_volumes_by_device(self) -> Dict[str, Dict[str, Any]]:
        return {record["device"]: record for record in self.physical_volumes}


def _validate_record(record: Any, required: str) -> Dict[str, Any]:
    if not isinstance(record, dict):
        raise ReconcileSkip(f"record is {type(record).__name__}, expected an object")
    value = coerce_str(record.get(required))
    if value is None:
        raise ReconcileSkip(f"record is missing required field {required!r}")
    if value != record.get(required):
        record = dict(record, **{required: value})
    return record
