import asyncio

import pytest
from fastapi import FastAPI, HTTPException, status
from fastapi.testclient import TestClient

from conftest import make_context
from vgmanager.api import routes
from vgmanager.services.command_runner import CommandResult
from vgmanager.services.manager import VolumeGroupManager
from vgmanager.services.volume_group import VolumeGroup


@pytest.fixture
def manager(runner):
    manager = VolumeGroupManager(make_context(runner))
    asyncio.run(manager.context.jobs.start())
    group = manager.volume_groups.insert(VolumeGroup(manager.context, "vg0"))
    group.free_size = 2048
    group.publish_if_pending()
    return manager


@pytest.fixture
def client(manager):
    app = FastAPI()
    app.include_router(routes.router)
    app.dependency_overrides[routes.get_manager] = lambda: manager
    with TestClient(app) as client:
        yield client


def test_health_check(client):
    response = client.get("/healthz")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "healthy"
    assert body["volume_groups"] == 1


def test_list_and_get_volume_groups(client):
    listed = client.get("/api/v1/volume-groups").json()
    assert [group["name"] for group in listed] == ["vg0"]

    response = client.get("/api/v1/volume-groups/vg0")
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["free_size"] == 2048


def test_unknown_volume_group_is_404(client):
    assert client.get("/api/v1/volume-groups/nope").status_code == status.HTTP_404_NOT_FOUND
    assert client.post("/api/v1/volume-groups/nope/poll").status_code == status.HTTP_404_NOT_FOUND


def test_unknown_logical_volume_is_404(client):
    response = client.get("/api/v1/volume-groups/vg0/logical-volumes/missing")
    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_poll_is_accepted(client, runner):
    response = client.post("/api/v1/volume-groups/vg0/poll")

    assert response.status_code == status.HTTP_202_ACCEPTED
    assert runner.fetches[0].argv == ("lvm-helper", "show", "vg0")


def test_delete_success(client, runner):
    response = client.delete("/api/v1/volume-groups/vg0")

    assert response.status_code == status.HTTP_200_OK
    assert runner.sync_calls == [("vgremove", "-f", "vg0")]


def test_delete_failure_is_conflict(client, runner):
    runner.results["vgremove"] = CommandResult(("vgremove",), 5, "", "Volume group busy")

    response = client.delete("/api/v1/volume-groups/vg0")

    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["detail"].startswith("Error deleting volume group: ")


def test_add_unknown_device_is_bad_request(client, runner):
    response = client.post(
        "/api/v1/volume-groups/vg0/add-device",
        json={"block": "/org/freedesktop/UDisks2/block_devices/nope"},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert runner.calls == []


def test_create_thin_volume_with_unknown_pool(client):
    response = client.post(
        "/api/v1/volume-groups/vg0/thin-volumes",
        json={"name": "thin", "size": 4096, "pool": "/org/freedesktop/UDisks2/lvm/vg0/nope"},
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_create_request_validation(client):
    response = client.post(
        "/api/v1/volume-groups/vg0/plain-volumes", json={"name": "", "size": 0}
    )

    assert response.status_code == 422


def test_rename_without_publication_times_out(client, monkeypatch):
    monkeypatch.setattr(routes.settings, "request_timeout_seconds", 0.2)

    response = client.post("/api/v1/volume-groups/vg0/rename", json={"new_name": "vg1"})

    assert response.status_code == status.HTTP_504_GATEWAY_TIMEOUT


def test_jobs_listing(client):
    client.delete("/api/v1/volume-groups/vg0")

    jobs = client.get("/api/v1/jobs").json()
    assert [job["operation"] for job in jobs] == ["lvm-vg-delete"]

    job_id = jobs[0]["job_id"]
    assert client.get(f"/api/v1/jobs/{job_id}").json()["status"] == "completed"
    assert client.get("/api/v1/jobs/missing").status_code == status.HTTP_404_NOT_FOUND


def test_websocket_subscription(client):
    with client.websocket_connect("/ws") as websocket:
        assert websocket.receive_json()["type"] == "connection"
        assert websocket.receive_json()["type"] == "initial_state"

        websocket.send_json({"type": "subscribe", "topics": ["objects", "bogus"]})
        reply = websocket.receive_json()

    assert reply == {"type": "subscription", "status": "subscribed", "topics": ["objects"]}


@pytest.mark.anyio("asyncio")
async def test_timed_out_request_releases_its_waiter(runner, monkeypatch):
    context = make_context(runner)
    await context.jobs.start()
    group = VolumeGroup(context, "vg0")
    monkeypatch.setattr(routes.settings, "request_timeout_seconds", 0.05)

    with pytest.raises(HTTPException) as excinfo:
        await routes._invoke(
            "CreatePlainVolume", group.handle_create_plain_volume, name="data", size=4096
        )

    assert excinfo.value.status_code == status.HTTP_504_GATEWAY_TIMEOUT
    assert context.bridge.pending_count() == 0
    assert context.objects.listener_count() == 0
    await group.dispose()
    await context.jobs.stop()
