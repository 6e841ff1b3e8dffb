"""Volume group entity and its mutating operations."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..core.entity_table import EntityTable
from ..core.errors import CommandError, FetchError, PreconditionError
from ..core.inventory import GROUP_FIELDS, InventorySnapshot, coerce_int, coerce_str
from ..core.lvm_names import build_object_path, decode_lvm_name, encode_lvm_name
from ..core.models import NotificationCategory, NotificationLevel, VolumeGroupInfo, VolumeType
from .command_runner import SpawnedProcess
from .completion_bridge import Invocation
from .context import DaemonContext
from .job_service import JobHandle
from .logical_volume import LogicalVolume
from .poll_scheduler import PollScheduler, PollState
from .reconciler import SnapshotReconciler

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512


def _round_to_sector(size: int) -> int:
    return size - size % SECTOR_SIZE


class VolumeGroup:
    """In-memory model of one LVM volume group.

    Created unpublished; the first refresh result publishes it, successful
    or not. All refreshes go through the group's :class:`PollScheduler`.
    """

    # Volume groups have no owning context.
    owner_name: Optional[str] = None

    def __init__(self, context: DaemonContext, name: str) -> None:
        self._context = context
        self.name = name
        self.display_name = decode_lvm_name(name)
        self.uuid: Optional[str] = None
        self.size = 0
        self.free_size = 0
        self.extent_size = 0
        self.needs_polling = False
        self.object_path = build_object_path(context.settings.object_path_prefix, name)
        self.logical_volumes: EntityTable[LogicalVolume] = EntityTable(
            on_remove=self._unpublish_volume
        )
        self._need_publish = True
        self._disposed = False
        self._reconciler = SnapshotReconciler(context)
        self._scheduler = PollScheduler(
            name,
            self._launch_fetch,
            self._on_fetch_result,
            interval=context.settings.poll_interval_seconds,
        )

    def __repr__(self) -> str:
        return f"<VolumeGroup {self.name}>"

    @property
    def published(self) -> bool:
        return not self._need_publish and not self._disposed

    @property
    def poll_state(self) -> PollState:
        return self._scheduler.state

    @property
    def _notification_key(self) -> str:
        return f"volume-group-refresh-{self.name}"

    # -- refresh -----------------------------------------------------------

    def update(self) -> None:
        """Request a refresh from the inventory helper."""
        self._scheduler.request_poll()

    def poll(self) -> None:
        self._scheduler.request_poll()

    def _launch_fetch(self) -> SpawnedProcess:
        argv = self._context.settings.get_lvm_helper_argv() + ["show", self.name]
        return self._context.runner.spawn_for_json(argv, self.name)

    def _on_fetch_result(self, payload: Optional[Any], error: Optional[FetchError]) -> None:
        if self._disposed:
            return

        snapshot: Optional[InventorySnapshot] = None
        if error is None:
            try:
                snapshot = InventorySnapshot.from_payload(payload, self.name)
            except FetchError as exc:
                error = exc

        if error is not None or snapshot is None:
            self.publish_if_pending()
            logger.warning("Failed to update LVM volume group %s: %s", self.name, error)
            self._context.notifications.upsert_system_notification(
                self._notification_key,
                title="Volume group refresh failed",
                message=f"Failed to update volume group {self.display_name}: {error}",
                level=NotificationLevel.WARNING,
                category=NotificationCategory.VOLUME_GROUP,
                related_entity=self.name,
            )
            return

        self._context.notifications.clear_system_notification(self._notification_key)
        needs_polling = self._reconciler.reconcile(self, snapshot)
        if needs_polling and self._context.settings.auto_poll_while_needed:
            self._scheduler.request_poll()

    def apply_group_fields(self, fields: Dict[str, Any]) -> None:
        """Copy group level snapshot fields; absent fields keep their value."""
        for key, attribute in GROUP_FIELDS.items():
            if key not in fields:
                continue
            if attribute == "name":
                name = coerce_str(fields[key])
                if name:
                    self.display_name = decode_lvm_name(name)
            elif attribute == "uuid":
                self.uuid = coerce_str(fields[key]) or self.uuid
            else:
                value = coerce_int(fields[key])
                if value is not None:
                    setattr(self, attribute, value)

    def publish_if_pending(self) -> None:
        if not self._need_publish or self._disposed:
            return
        self._need_publish = False
        self._context.objects.publish(self.object_path, self)
        logger.info("Published volume group %s at %s", self.name, self.object_path)

    def _unpublish_volume(self, volume: LogicalVolume) -> None:
        self._context.objects.unpublish(volume.object_path, volume)

    async def dispose(self) -> None:
        """Unpublish every volume and then the group itself."""
        await self._scheduler.stop()
        self._disposed = True
        self.logical_volumes.clear()
        self._context.blocks.clear_group(self.name, self.object_path)
        if not self._need_publish:
            self._context.objects.unpublish(self.object_path, self)
        self._need_publish = False
        self._context.notifications.clear_system_notification(self._notification_key)
        logger.info("Removed volume group %s", self.name)

    def find_logical_volume(self, name: str) -> Optional[LogicalVolume]:
        return self.logical_volumes.get(name)

    def to_info(self) -> VolumeGroupInfo:
        return VolumeGroupInfo(
            object_path=self.object_path,
            name=self.name,
            display_name=self.display_name,
            uuid=self.uuid,
            size=self.size,
            free_size=self.free_size,
            extent_size=self.extent_size,
            needs_polling=self.needs_polling,
            logical_volumes=[volume.object_path for volume in self.logical_volumes],
        )

    # -- operations --------------------------------------------------------

    def _refresh_on_completion(self, job: JobHandle) -> None:
        def on_completed(success: bool, message: str) -> None:
            if not self._disposed:
                self.update()

        job.connect_completed(on_completed)

    def _find_block(self, invocation: Invocation, block_path: str):
        block = self._context.blocks.find(block_path)
        if block is None:
            invocation.return_error(PreconditionError("The given object is not a valid block"))
        return block

    async def handle_delete(
        self, invocation: Invocation, wipe: bool = False, caller_uid: int = 0
    ) -> None:
        runner = self._context.runner
        name = self.name
        devices: List[str] = (
            self._context.blocks.physical_volume_devices(self.object_path) if wipe else []
        )

        def delete_volume_group() -> None:
            runner.check_call_sync(["vgremove", "-f", name])
            for device in devices:
                runner.wipe_block(device)

        job = self._context.jobs.launch_threaded_job(
            "lvm-vg-delete", [self.object_path], caller_uid, delete_volume_group
        )
        self._context.bridge.register(
            invocation, job, error_prefix="Error deleting volume group"
        )

    async def handle_rename(
        self, invocation: Invocation, new_name: str, caller_uid: int = 0
    ) -> None:
        encoded_new_name = encode_lvm_name(new_name)
        job = self._context.jobs.launch_spawned_job(
            "lvm-vg-rename",
            [self.object_path],
            caller_uid,
            ["vgrename", self.name, encoded_new_name],
        )
        self._context.bridge.register(
            invocation,
            job,
            entity_type=VolumeGroup,
            expected_name=encoded_new_name,
            error_prefix="Error renaming volume group",
        )

    async def handle_add_device(
        self, invocation: Invocation, block_path: str, caller_uid: int = 0
    ) -> None:
        block = self._find_block(invocation, block_path)
        if block is None:
            return

        reason = self._context.blocks.unused_reason(block)
        if reason is not None:
            invocation.return_error(PreconditionError(reason))
            return

        try:
            await self._context.runner.check_call(["wipefs", "-a", block.device])
        except CommandError as exc:
            invocation.return_error(PreconditionError(str(exc)))
            return

        job = self._context.jobs.launch_spawned_job(
            "lvm-vg-add-device",
            [self.object_path, block.object_path],
            caller_uid,
            ["vgextend", self.name, block.device],
        )
        self._refresh_on_completion(job)
        self._context.bridge.register(
            invocation, job, error_prefix="Error adding device to volume group"
        )

    async def handle_remove_device(
        self,
        invocation: Invocation,
        block_path: str,
        wipe: bool = False,
        caller_uid: int = 0,
    ) -> None:
        block = self._find_block(invocation, block_path)
        if block is None:
            return

        runner = self._context.runner
        vg_name = self.name
        pv_name = block.device

        def remove_device() -> None:
            runner.check_call_sync(["vgreduce", vg_name, pv_name])
            if wipe:
                runner.wipe_block(pv_name)

        job = self._context.jobs.launch_threaded_job(
            "lvm-vg-rem-device",
            [self.object_path, block.object_path],
            caller_uid,
            remove_device,
        )
        self._refresh_on_completion(job)
        self._context.bridge.register(
            invocation, job, error_prefix="Error removing device from volume group"
        )

    async def handle_empty_device(
        self,
        invocation: Invocation,
        block_path: str,
        no_block: bool = False,
        caller_uid: int = 0,
    ) -> None:
        block = self._find_block(invocation, block_path)
        if block is None:
            return

        argv = ["pvmove", "-b", block.device] if no_block else ["pvmove", block.device]
        # The block's path is listed so move progress can be attributed.
        job = self._context.jobs.launch_spawned_job(
            "lvm-vg-empty-device",
            [self.object_path, block.object_path],
            caller_uid,
            argv,
        )
        self._refresh_on_completion(job)
        self._context.bridge.register(
            invocation, job, error_prefix="Error emptying device in volume group"
        )
        self.poll()

    def _launch_create(
        self, invocation: Invocation, encoded_name: str, argv: List[str], caller_uid: int
    ) -> None:
        job = self._context.jobs.launch_spawned_job(
            "lvm-vg-create-volume", [self.object_path], caller_uid, argv
        )
        self._refresh_on_completion(job)
        self._context.bridge.register(
            invocation,
            job,
            entity_type=LogicalVolume,
            expected_name=encoded_name,
            owner=self.name,
            error_prefix="Error creating logical volume",
        )

    async def handle_create_plain_volume(
        self,
        invocation: Invocation,
        name: str,
        size: int,
        stripes: int = 0,
        stripe_size: int = 0,
        caller_uid: int = 0,
    ) -> None:
        encoded_name = encode_lvm_name(name, for_lv=True)
        argv = [
            "lvcreate", self.name,
            f"-L{_round_to_sector(size)}b",
            "-n", encoded_name,
        ]
        if stripes > 0:
            argv += ["-i", str(stripes)]
        if stripe_size > 0:
            argv += ["-I", f"{stripe_size}b"]
        self._launch_create(invocation, encoded_name, argv, caller_uid)

    async def handle_create_thin_pool_volume(
        self, invocation: Invocation, name: str, size: int, caller_uid: int = 0
    ) -> None:
        encoded_name = encode_lvm_name(name, for_lv=True)
        argv = [
            "lvcreate", self.name,
            "-T", "-L", f"{_round_to_sector(size)}b",
            "--thinpool", encoded_name,
        ]
        self._launch_create(invocation, encoded_name, argv, caller_uid)

    async def handle_create_thin_volume(
        self,
        invocation: Invocation,
        name: str,
        size: int,
        pool_path: str,
        caller_uid: int = 0,
    ) -> None:
        pool = self._context.objects.find(pool_path, LogicalVolume)
        if pool is None or pool.owner_name != self.name:
            invocation.return_error(PreconditionError("Not a valid logical volume"))
            return
        if pool.volume_type is not VolumeType.POOL:
            invocation.return_error(
                PreconditionError(f"Logical volume {pool.display_name} is not a thin pool")
            )
            return

        encoded_name = encode_lvm_name(name, for_lv=True)
        argv = [
            "lvcreate", self.name,
            "--thinpool", pool.name,
            "-V", f"{_round_to_sector(size)}b",
            "-n", encoded_name,
        ]
        self._launch_create(invocation, encoded_name, argv, caller_uid)
