"""API route handlers."""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from ..core.config import settings
from ..core.errors import JobFailure, PreconditionError, UnknownObjectError, VgManagerError
from ..core.models import (
    AddDeviceRequest,
    BlockDevice,
    CreatePlainVolumeRequest,
    CreateThinPoolRequest,
    CreateThinVolumeRequest,
    DeleteRequest,
    EmptyDeviceRequest,
    HealthResponse,
    Job,
    LogicalVolumeInfo,
    ObjectPathResponse,
    RemoveDeviceRequest,
    RenameRequest,
    VolumeGroupInfo,
)
from ..services.completion_bridge import Invocation
from ..services.manager import VolumeGroupManager, volume_group_manager
from ..services.notification_service import notification_service
from ..services.volume_group import VolumeGroup
from ..services.websocket_service import websocket_manager

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Requests are not authenticated; jobs are attributed to root.
DEFAULT_CALLER_UID = 0

router = APIRouter()


def get_manager() -> VolumeGroupManager:
    return volume_group_manager


def _require_group(manager: VolumeGroupManager, name: str) -> VolumeGroup:
    group = manager.get_volume_group(name)
    if group is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Volume group {name} not found",
        )
    return group


async def _invoke(
    method: str,
    handler: Callable[..., Awaitable[None]],
    **kwargs: Any,
) -> Any:
    """Run an operation handler and wait for its invocation to complete."""
    invocation = Invocation(method)
    try:
        await handler(invocation, caller_uid=DEFAULT_CALLER_UID, **kwargs)
    except RuntimeError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc

    try:
        return await invocation.wait(timeout=settings.request_timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail=f"{method} did not complete in time",
        ) from exc
    except PreconditionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except JobFailure as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except UnknownObjectError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except VgManagerError as exc:
        logger.error("%s failed: %s", method, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    finally:
        invocation.abandon()


@router.get("/healthz", response_model=HealthResponse, tags=["Health"])
async def health_check(manager: VolumeGroupManager = Depends(get_manager)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=API_VERSION,
        timestamp=datetime.now(timezone.utc),
        volume_groups=len(manager.list_volume_groups()),
        running_jobs=manager.context.jobs.get_running_jobs_count(),
    )


@router.get("/api/v1/volume-groups", response_model=List[VolumeGroupInfo], tags=["Volume groups"])
async def list_volume_groups(manager: VolumeGroupManager = Depends(get_manager)):
    """List published volume groups."""
    return [group.to_info() for group in manager.list_volume_groups()]


@router.get(
    "/api/v1/volume-groups/{name}", response_model=VolumeGroupInfo, tags=["Volume groups"]
)
async def get_volume_group(name: str, manager: VolumeGroupManager = Depends(get_manager)):
    return _require_group(manager, name).to_info()


@router.get(
    "/api/v1/volume-groups/{name}/logical-volumes",
    response_model=List[LogicalVolumeInfo],
    tags=["Volume groups"],
)
async def list_logical_volumes(name: str, manager: VolumeGroupManager = Depends(get_manager)):
    group = _require_group(manager, name)
    return [volume.to_info() for volume in group.logical_volumes]


@router.get(
    "/api/v1/volume-groups/{name}/logical-volumes/{lv_name}",
    response_model=LogicalVolumeInfo,
    tags=["Volume groups"],
)
async def get_logical_volume(
    name: str, lv_name: str, manager: VolumeGroupManager = Depends(get_manager)
):
    volume = _require_group(manager, name).find_logical_volume(lv_name)
    if volume is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Logical volume {name}/{lv_name} not found",
        )
    return volume.to_info()


@router.get("/api/v1/block-devices", response_model=List[BlockDevice], tags=["Block devices"])
async def list_block_devices(manager: VolumeGroupManager = Depends(get_manager)):
    return manager.context.blocks.list_blocks()


@router.post(
    "/api/v1/volume-groups/{name}/poll",
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Volume groups"],
)
async def poll_volume_group(name: str, manager: VolumeGroupManager = Depends(get_manager)):
    """Request a refresh; returns immediately."""
    _require_group(manager, name).poll()
    return {"status": "accepted"}


@router.delete("/api/v1/volume-groups/{name}", tags=["Volume groups"])
async def delete_volume_group(
    name: str,
    wipe: bool = False,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    await _invoke("Delete", group.handle_delete, **DeleteRequest(wipe=wipe).model_dump())
    return {"status": "deleted"}


@router.post(
    "/api/v1/volume-groups/{name}/rename",
    response_model=ObjectPathResponse,
    tags=["Volume groups"],
)
async def rename_volume_group(
    name: str,
    request: RenameRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    path = await _invoke("Rename", group.handle_rename, new_name=request.new_name)
    return ObjectPathResponse(object_path=path)


@router.post("/api/v1/volume-groups/{name}/add-device", tags=["Volume groups"])
async def add_device(
    name: str,
    request: AddDeviceRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    await _invoke("AddDevice", group.handle_add_device, block_path=request.block)
    return {"status": "completed"}


@router.post("/api/v1/volume-groups/{name}/remove-device", tags=["Volume groups"])
async def remove_device(
    name: str,
    request: RemoveDeviceRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    await _invoke(
        "RemoveDevice", group.handle_remove_device, block_path=request.block, wipe=request.wipe
    )
    return {"status": "completed"}


@router.post("/api/v1/volume-groups/{name}/empty-device", tags=["Volume groups"])
async def empty_device(
    name: str,
    request: EmptyDeviceRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    await _invoke(
        "EmptyDevice",
        group.handle_empty_device,
        block_path=request.block,
        no_block=request.no_block,
    )
    return {"status": "completed"}


@router.post(
    "/api/v1/volume-groups/{name}/plain-volumes",
    response_model=ObjectPathResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Volume groups"],
)
async def create_plain_volume(
    name: str,
    request: CreatePlainVolumeRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    path = await _invoke(
        "CreatePlainVolume",
        group.handle_create_plain_volume,
        name=request.name,
        size=request.size,
        stripes=request.stripes,
        stripe_size=request.stripe_size,
    )
    return ObjectPathResponse(object_path=path)


@router.post(
    "/api/v1/volume-groups/{name}/thin-pools",
    response_model=ObjectPathResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Volume groups"],
)
async def create_thin_pool(
    name: str,
    request: CreateThinPoolRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    path = await _invoke(
        "CreateThinPoolVolume",
        group.handle_create_thin_pool_volume,
        name=request.name,
        size=request.size,
    )
    return ObjectPathResponse(object_path=path)


@router.post(
    "/api/v1/volume-groups/{name}/thin-volumes",
    response_model=ObjectPathResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Volume groups"],
)
async def create_thin_volume(
    name: str,
    request: CreateThinVolumeRequest,
    manager: VolumeGroupManager = Depends(get_manager),
):
    group = _require_group(manager, name)
    path = await _invoke(
        "CreateThinVolume",
        group.handle_create_thin_volume,
        name=request.name,
        size=request.size,
        pool_path=request.pool,
    )
    return ObjectPathResponse(object_path=path)


@router.get("/api/v1/jobs", response_model=List[Job], tags=["Jobs"])
async def list_jobs(manager: VolumeGroupManager = Depends(get_manager)):
    """List all jobs."""
    return manager.context.jobs.get_all_jobs()


@router.get("/api/v1/jobs/{job_id}", response_model=Job, tags=["Jobs"])
async def get_job(job_id: str, manager: VolumeGroupManager = Depends(get_manager)):
    """Get job details."""
    job = manager.context.jobs.get_job(job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found"
        )
    return job


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for object, job and notification updates."""
    client_id = str(uuid.uuid4())
    connected = await websocket_manager.connect(websocket, client_id)
    if not connected:
        return

    try:
        notifications = notification_service.get_all_notifications()
        await websocket_manager.send_personal_message(client_id, {
            "type": "initial_state",
            "data": {
                "notifications": [n.model_dump(mode="json") for n in notifications],
            },
        })

        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                logger.info("Client %s disconnected", client_id)
                break
            await websocket_manager.handle_client_message(client_id, data)
    except Exception as e:
        logger.error("WebSocket error for client %s: %s", client_id, e)
    finally:
        await websocket_manager.disconnect(client_id)
