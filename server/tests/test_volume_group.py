import logging

import pytest

from conftest import make_context, settle
from vgmanager.core.errors import JobFailure, PreconditionError
from vgmanager.core.models import PhysicalVolumeInfo
from vgmanager.services.command_runner import CommandResult
from vgmanager.services.completion_bridge import Invocation
from vgmanager.services.poll_scheduler import PollState
from vgmanager.services.volume_group import VolumeGroup

GROUP_PATH = "/org/freedesktop/UDisks2/lvm/vg0"


def payload(lvs=(), pvs=()):
    return {
        "name": "vg0",
        "uuid": "vg-uuid",
        "size": 4096,
        "free-size": 1024,
        "extent-size": 512,
        "lvs": list(lvs),
        "pvs": list(pvs),
    }


@pytest.fixture
def fast_context(runner):
    return make_context(runner, poll_interval_seconds=0.0)


async def refresh(group, runner, data):
    group.update()
    await settle()
    runner.fetches[-1].resolve(data)
    await settle()


async def finished_jobs(context):
    for handle in list(context.jobs.jobs.values()):
        await handle.wait()
    await settle()


@pytest.mark.anyio("asyncio")
async def test_update_spawns_helper_for_group(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")

    group.update()

    assert runner.fetches[0].argv == ("lvm-helper", "show", "vg0")
    assert group.poll_state is PollState.FETCH_IN_FLIGHT
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_successful_refresh_publishes_group_and_volumes(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")

    await refresh(group, runner, payload(lvs=[{"name": "root"}]))

    assert group.published
    assert fast_context.objects.find(GROUP_PATH, VolumeGroup) is group
    assert fast_context.objects.is_published(f"{GROUP_PATH}/root")
    info = group.to_info()
    assert info.free_size == 1024
    assert info.logical_volumes == [f"{GROUP_PATH}/root"]
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_failed_first_fetch_still_publishes_group(fast_context, runner, caplog):
    group = VolumeGroup(fast_context, "vg0")

    group.update()
    await settle()
    with caplog.at_level(logging.WARNING):
        runner.fetches[0].fail("vgs exited with non-zero exit status 5")
        await settle()

    assert group.published
    assert len(group.logical_volumes) == 0
    assert "Failed to update LVM volume group vg0" in caplog.text
    notifications = fast_context.notifications.get_all_notifications()
    assert [n.related_entity for n in notifications] == ["vg0"]
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_failed_fetch_keeps_last_known_state(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")
    await refresh(group, runner, payload(lvs=[{"name": "root"}]))

    group.update()
    await settle()
    runner.fetches[-1].fail()
    await settle()

    assert group.logical_volumes.names() == ["root"]
    assert group.free_size == 1024
    assert fast_context.notifications.get_all_notifications()

    await refresh(group, runner, payload(lvs=[{"name": "root"}]))
    assert fast_context.notifications.get_all_notifications() == []
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_malformed_payload_is_a_fetch_failure(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")

    await refresh(group, runner, ["not", "an", "object"])

    assert group.published
    assert fast_context.notifications.get_all_notifications()
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_needs_polling_triggers_another_fetch(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")

    await refresh(group, runner, payload(lvs=[{"name": "pvmove0", "move_pv": "/dev/sdb"}]))

    assert group.needs_polling
    assert len(runner.fetches) == 2
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_poll_requests_are_coalesced(runner):
    context = make_context(runner, poll_interval_seconds=10.0)
    group = VolumeGroup(context, "vg0")

    group.update()
    group.poll()
    group.update()

    assert len(runner.fetches) == 1
    assert group.poll_state is PollState.FETCH_IN_FLIGHT_PENDING
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_dispose_unpublishes_everything(fast_context, runner):
    group = VolumeGroup(fast_context, "vg0")
    block = fast_context.blocks.add_block("/dev/sdb")
    await refresh(
        group, runner, payload(lvs=[{"name": "root"}], pvs=[{"device": "/dev/sdb"}])
    )
    assert block.physical_volume is not None

    await group.dispose()

    assert not fast_context.objects.is_published(GROUP_PATH)
    assert not fast_context.objects.is_published(f"{GROUP_PATH}/root")
    assert block.physical_volume is None
    assert not group.published


# -- operations ---------------------------------------------------------------


@pytest.fixture
async def started(fast_context):
    await fast_context.jobs.start()
    yield fast_context
    await fast_context.jobs.stop()


def member_block(context, device="/dev/sdb"):
    block = context.blocks.add_block(device)
    block.physical_volume = PhysicalVolumeInfo(volume_group=GROUP_PATH)
    return block


@pytest.mark.anyio("asyncio")
async def test_delete_with_wipe(started, runner):
    group = VolumeGroup(started, "vg0")
    member_block(started, "/dev/sdb")
    invocation = Invocation("Delete")

    await group.handle_delete(invocation, wipe=True)

    assert await invocation.wait(timeout=1) is None
    assert runner.sync_calls == [("vgremove", "-f", "vg0"), ("wipefs", "-a", "/dev/sdb")]
    job = started.jobs.get_all_jobs()[0]
    assert job.operation == "lvm-vg-delete"
    assert job.objects == [GROUP_PATH]


@pytest.mark.anyio("asyncio")
async def test_delete_failure_reports_job_message(started, runner):
    runner.results["vgremove"] = CommandResult(("vgremove",), 5, "", "Volume group busy")
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("Delete")

    await group.handle_delete(invocation)

    with pytest.raises(JobFailure) as excinfo:
        await invocation.wait(timeout=1)
    assert str(excinfo.value).startswith("Error deleting volume group: vgremove exited")
    assert "Volume group busy" in excinfo.value.message
    assert runner.sync_calls == [("vgremove", "-f", "vg0")]


@pytest.mark.anyio("asyncio")
async def test_rename_waits_for_renamed_group(started, runner):
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("Rename")

    await group.handle_rename(invocation, "new vg")
    await finished_jobs(started)

    assert runner.calls == [("vgrename", "vg0", "new+20vg")]
    assert not invocation.done

    renamed = VolumeGroup(started, "new+20vg")
    renamed.publish_if_pending()

    assert await invocation.wait(timeout=1) == renamed.object_path


@pytest.mark.anyio("asyncio")
async def test_rename_failure(started, runner):
    runner.results["vgrename"] = CommandResult(("vgrename",), 5, "", "New volume group exists")
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("Rename")

    await group.handle_rename(invocation, "vg1")

    with pytest.raises(JobFailure) as excinfo:
        await invocation.wait(timeout=1)
    assert str(excinfo.value).startswith("Error renaming volume group: ")


@pytest.mark.anyio("asyncio")
async def test_add_device_unknown_block(started, runner):
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("AddDevice")

    await group.handle_add_device(invocation, "/org/freedesktop/UDisks2/block_devices/nope")

    with pytest.raises(PreconditionError):
        await invocation.wait(timeout=1)
    assert runner.calls == []
    assert started.jobs.get_all_jobs() == []


@pytest.mark.anyio("asyncio")
async def test_add_device_rejects_block_in_use(started, runner):
    group = VolumeGroup(started, "vg0")
    block = started.blocks.add_block("/dev/sdc", mountpoint="/srv")
    invocation = Invocation("AddDevice")

    await group.handle_add_device(invocation, block.object_path)

    with pytest.raises(PreconditionError, match="mounted"):
        await invocation.wait(timeout=1)
    assert runner.calls == []


@pytest.mark.anyio("asyncio")
async def test_add_device_wipes_then_extends(started, runner):
    group = VolumeGroup(started, "vg0")
    block = started.blocks.add_block("/dev/sdc")
    invocation = Invocation("AddDevice")

    await group.handle_add_device(invocation, block.object_path)

    assert await invocation.wait(timeout=1) is None
    assert runner.calls[:2] == [("wipefs", "-a", "/dev/sdc"), ("vgextend", "vg0", "/dev/sdc")]
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_add_device_wipe_failure_is_precondition(started, runner):
    runner.results["wipefs"] = CommandResult(("wipefs",), 1, "", "probing failed")
    group = VolumeGroup(started, "vg0")
    block = started.blocks.add_block("/dev/sdc")
    invocation = Invocation("AddDevice")

    await group.handle_add_device(invocation, block.object_path)

    with pytest.raises(PreconditionError, match="probing failed"):
        await invocation.wait(timeout=1)
    assert started.jobs.get_all_jobs() == []


@pytest.mark.anyio("asyncio")
async def test_remove_device_with_wipe(started, runner):
    group = VolumeGroup(started, "vg0")
    block = member_block(started, "/dev/sdb")
    invocation = Invocation("RemoveDevice")

    await group.handle_remove_device(invocation, block.object_path, wipe=True)

    assert await invocation.wait(timeout=1) is None
    assert runner.sync_calls == [("vgreduce", "vg0", "/dev/sdb"), ("wipefs", "-a", "/dev/sdb")]
    job = started.jobs.get_all_jobs()[0]
    assert job.operation == "lvm-vg-rem-device"
    await group.dispose()


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize(
    "no_block, argv",
    [(False, ("pvmove", "/dev/sdb")), (True, ("pvmove", "-b", "/dev/sdb"))],
)
async def test_empty_device(started, runner, no_block, argv):
    group = VolumeGroup(started, "vg0")
    block = member_block(started, "/dev/sdb")
    invocation = Invocation("EmptyDevice")

    await group.handle_empty_device(invocation, block.object_path, no_block=no_block)

    assert await invocation.wait(timeout=1) is None
    assert argv in runner.calls
    job = started.jobs.get_all_jobs()[0]
    assert job.operation == "lvm-vg-empty-device"
    assert block.object_path in job.objects
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_create_plain_volume_resolves_on_publication(started, runner):
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("CreatePlainVolume")

    await group.handle_create_plain_volume(
        invocation, "data", 1000, stripes=2, stripe_size=65536
    )
    await finished_jobs(started)

    assert runner.calls[0] == (
        "lvcreate", "vg0", "-L512b", "-n", "data", "-i", "2", "-I", "65536b",
    )
    assert not invocation.done

    # Job completion refreshes the group; the snapshot then lists the volume.
    runner.fetches[-1].resolve(payload(lvs=[{"name": "data", "size": 512}]))
    await settle()

    assert await invocation.wait(timeout=1) == f"{GROUP_PATH}/data"
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_create_volume_failure(started, runner):
    runner.results["lvcreate"] = CommandResult(("lvcreate",), 5, "", "Insufficient free space")
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("CreatePlainVolume")

    await group.handle_create_plain_volume(invocation, "data", 4096)

    with pytest.raises(JobFailure) as excinfo:
        await invocation.wait(timeout=1)
    assert str(excinfo.value).startswith("Error creating logical volume: ")
    assert "Insufficient free space" in excinfo.value.message
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_create_thin_pool_volume(started, runner):
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("CreateThinPoolVolume")

    await group.handle_create_thin_pool_volume(invocation, "pool", 1 << 30)
    await finished_jobs(started)

    assert runner.calls[0] == (
        "lvcreate", "vg0", "-T", "-L", f"{1 << 30}b", "--thinpool", "pool",
    )
    started.bridge.teardown()
    with pytest.raises(JobFailure, match="shutting down"):
        await invocation.wait(timeout=1)
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_create_thin_volume(started, runner):
    group = VolumeGroup(started, "vg0")
    await refresh(group, runner, payload(lvs=[{"name": "pool", "type": "thin-pool"}]))
    pool = group.find_logical_volume("pool")
    invocation = Invocation("CreateThinVolume")

    await group.handle_create_thin_volume(invocation, "thin", 1025, pool.object_path)
    await finished_jobs(started)

    assert ("lvcreate", "vg0", "--thinpool", "pool", "-V", "1024b", "-n", "thin") in runner.calls
    started.bridge.teardown()
    with pytest.raises(JobFailure, match="shutting down"):
        await invocation.wait(timeout=1)
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_create_thin_volume_requires_known_pool(started, runner):
    group = VolumeGroup(started, "vg0")
    await refresh(group, runner, payload(lvs=[{"name": "plain"}]))
    plain = group.find_logical_volume("plain")

    missing = Invocation("CreateThinVolume")
    await group.handle_create_thin_volume(missing, "thin", 1024, f"{GROUP_PATH}/nope")
    with pytest.raises(PreconditionError):
        await missing.wait(timeout=1)

    not_pool = Invocation("CreateThinVolume")
    await group.handle_create_thin_volume(not_pool, "thin", 1024, plain.object_path)
    with pytest.raises(PreconditionError, match="not a thin pool"):
        await not_pool.wait(timeout=1)

    assert not any(call[0] == "lvcreate" for call in runner.calls)
    await group.dispose()


@pytest.mark.anyio("asyncio")
async def test_created_volume_name_is_encoded(started, runner):
    group = VolumeGroup(started, "vg0")
    invocation = Invocation("CreatePlainVolume")

    await group.handle_create_plain_volume(invocation, "pvmove me", 4096)
    await finished_jobs(started)

    assert runner.calls[0][4] == "+70vmove+20me"
    started.bridge.teardown()
    with pytest.raises(JobFailure, match="shutting down"):
        await invocation.wait(timeout=1)
    await group.dispose()
