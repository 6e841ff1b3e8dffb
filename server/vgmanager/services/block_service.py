"""Tracking of block devices and their LVM associations."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.config import settings
from ..core.errors import CommandError
from ..core.inventory import coerce_int, coerce_str
from ..core.lvm_names import build_object_path
from ..core.models import BlockDevice, PhysicalVolumeInfo
from .command_runner import CommandRunner
from .object_registry import ObjectRegistry

logger = logging.getLogger(__name__)

SYMLINK_DIRECTORIES = (
    "/dev/disk/by-id",
    "/dev/disk/by-path",
    "/dev/disk/by-uuid",
    "/dev/disk/by-label",
    "/dev/disk/by-partuuid",
)

LSBLK_ARGV = [
    "lsblk", "--json", "--paths", "--bytes",
    "--output", "NAME,TYPE,FSTYPE,MOUNTPOINT",
]


def split_dm_name(name: str) -> Tuple[Optional[str], Optional[str]]:
    """Split a device-mapper name ``vg-lv`` into its parts.

    Hyphens inside either part are doubled by device-mapper.
    """
    index = 0
    while index < len(name):
        if name[index] == "-":
            if index + 1 < len(name) and name[index + 1] == "-":
                index += 2
                continue
            return name[:index].replace("--", "-"), name[index + 1:].replace("--", "-")
        index += 1
    return None, None


def _collect_symlinks(directories: Iterable[str] = SYMLINK_DIRECTORIES) -> Dict[str, List[str]]:
    links: Dict[str, List[str]] = defaultdict(list)
    for directory in directories:
        try:
            entries = sorted(os.listdir(directory))
        except OSError:
            continue
        for entry in entries:
            link = os.path.join(directory, entry)
            links[os.path.realpath(link)].append(link)
    return links


class BlockService:
    """Known block devices, published through the object registry."""

    def __init__(self, registry: ObjectRegistry) -> None:
        self._registry = registry
        self._blocks: Dict[str, BlockDevice] = {}

    def add_block(self, device: str, **fields: Any) -> BlockDevice:
        """Register (or refresh) the block device with primary path ``device``."""
        object_path = build_object_path(
            settings.block_object_path_prefix, os.path.basename(device)
        )
        block = self._blocks.get(object_path)
        if block is None:
            block = BlockDevice(object_path=object_path, device=device, **fields)
            self._blocks[object_path] = block
            self._registry.publish(object_path, block)
        else:
            for name, value in fields.items():
                setattr(block, name, value)
        return block

    def remove_block(self, object_path: str) -> Optional[BlockDevice]:
        block = self._blocks.pop(object_path, None)
        if block is not None:
            self._registry.unpublish(object_path, block)
        return block

    def list_blocks(self) -> List[BlockDevice]:
        return list(self._blocks.values())

    def find(self, object_path: str) -> Optional[BlockDevice]:
        return self._blocks.get(object_path)

    @staticmethod
    def matches(block: BlockDevice, device: str) -> bool:
        """Path-or-symlink identity check."""
        return block.device == device or device in block.symlinks

    def find_by_device(self, device: str) -> Optional[BlockDevice]:
        for block in self._blocks.values():
            if self.matches(block, device):
                return block
        return None

    def unused_reason(self, block: BlockDevice) -> Optional[str]:
        """Return why ``block`` cannot become a new member, or None."""
        if block.physical_volume is not None:
            return f"Device {block.device} is already a physical volume"
        if block.mountpoint:
            return f"Device {block.device} is mounted at {block.mountpoint}"
        if block.holders:
            return f"Device {block.device} is in use by {', '.join(block.holders)}"
        if block.logical_volume is not None:
            return f"Device {block.device} is a logical volume in use"
        return None

    def physical_volume_devices(self, group_path: str) -> List[str]:
        return [
            block.device
            for block in self._blocks.values()
            if block.physical_volume is not None
            and block.physical_volume.volume_group == group_path
        ]

    def update_for_group(
        self,
        group_name: str,
        group_path: str,
        volume_paths: Dict[str, str],
        pvs_by_device: Dict[str, Dict[str, Any]],
    ) -> None:
        """Associate blocks with ``group_path`` or clear stale associations.

        ``volume_paths`` maps visible logical volume names to object paths;
        ``pvs_by_device`` maps device paths reported by the snapshot to the
        physical volume records.
        """
        for block in self._blocks.values():
            if block.dm_vg_name == group_name:
                block.logical_volume = volume_paths.get(block.dm_lv_name or "")

            pv_info = pvs_by_device.get(block.device)
            if pv_info is None:
                for link in block.symlinks:
                    pv_info = pvs_by_device.get(link)
                    if pv_info is not None:
                        break

            if pv_info is not None:
                block.physical_volume = PhysicalVolumeInfo(
                    volume_group=group_path,
                    size=coerce_int(pv_info.get("size")),
                    free_size=coerce_int(pv_info.get("free-size")),
                )
            elif (
                block.physical_volume is not None
                and block.physical_volume.volume_group == group_path
            ):
                block.physical_volume = None

    def clear_group(self, group_name: str, group_path: str) -> None:
        for block in self._blocks.values():
            if block.physical_volume is not None and block.physical_volume.volume_group == group_path:
                block.physical_volume = None
            if block.dm_vg_name == group_name:
                block.logical_volume = None

    async def scan(self, runner: CommandRunner) -> int:
        """Refresh the block list from ``lsblk``; returns the device count."""
        try:
            payload = await runner.run_json(LSBLK_ARGV)
        except Exception as exc:
            raise CommandError("lsblk", f"Failed to enumerate block devices: {exc}") from exc

        links = await asyncio.to_thread(_collect_symlinks)
        seen = set()
        for record in _flatten(payload.get("blockdevices") or []):
            device = coerce_str(record.get("name"))
            if device is None:
                continue
            children = [
                coerce_str(child.get("name"))
                for child in record.get("children") or []
                if coerce_str(child.get("name"))
            ]
            real = os.path.realpath(device)
            symlinks = list(links.get(real, []))
            if real != device:
                symlinks.append(real)

            vg_name = lv_name = None
            if record.get("type") == "lvm":
                vg_name, lv_name = split_dm_name(os.path.basename(device))

            block = self.add_block(
                device,
                symlinks=symlinks,
                device_type=coerce_str(record.get("type")),
                fs_type=coerce_str(record.get("fstype")),
                mountpoint=coerce_str(record.get("mountpoint")),
                holders=children,
                dm_vg_name=vg_name,
                dm_lv_name=lv_name,
            )
            seen.add(block.object_path)

        for object_path in list(self._blocks):
            if object_path not in seen:
                self.remove_block(object_path)

        logger.debug("Block device scan found %d devices", len(seen))
        return len(seen)


def _flatten(records: List[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    for record in records:
        if not isinstance(record, dict):
            continue
        yield record
        yield from _flatten(record.get("children") or [])
