"""Data models for the application."""
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class NotificationLevel(str, Enum):
    """Notification severity level."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class NotificationCategory(str, Enum):
    """Notification category."""
    SYSTEM = "system"
    VOLUME_GROUP = "volume_group"
    JOB = "job"


class JobStatus(str, Enum):
    """Job execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class VolumeType(str, Enum):
    """Kind of logical volume."""
    BLOCK = "block"
    POOL = "pool"
    THIN = "thin"


class Notification(BaseModel):
    """System notification."""
    id: str
    title: str
    message: str
    level: NotificationLevel
    category: NotificationCategory
    created_at: datetime
    read: bool = False
    related_entity: Optional[str] = None  # Volume group name, job id, etc.
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """Externally visible long-running operation."""
    job_id: str
    operation: str  # e.g. "lvm-vg-empty-device"
    objects: List[str] = Field(default_factory=list)  # object paths the job targets
    status: JobStatus = JobStatus.PENDING
    started_by_uid: int = 0
    progress: float = 0.0
    progress_valid: bool = False
    message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class PhysicalVolumeInfo(BaseModel):
    """Physical volume association recorded on a block device."""
    volume_group: str  # object path of the owning volume group
    size: Optional[int] = None
    free_size: Optional[int] = None


class BlockDevice(BaseModel):
    """Block device known to the daemon."""
    object_path: str
    device: str  # primary path, e.g. /dev/sda1
    symlinks: List[str] = Field(default_factory=list)
    device_type: Optional[str] = None
    fs_type: Optional[str] = None
    mountpoint: Optional[str] = None
    holders: List[str] = Field(default_factory=list)
    dm_vg_name: Optional[str] = None
    dm_lv_name: Optional[str] = None
    logical_volume: Optional[str] = None  # object path of the backing LV
    physical_volume: Optional[PhysicalVolumeInfo] = None


class LogicalVolumeInfo(BaseModel):
    """Serialised logical volume."""
    object_path: str
    name: str
    display_name: Optional[str] = None
    volume_group: str
    uuid: Optional[str] = None
    size: int = 0
    volume_type: VolumeType = VolumeType.BLOCK
    pool: Optional[str] = None
    origin: Optional[str] = None
    data_allocated_ratio: Optional[float] = None
    metadata_allocated_ratio: Optional[float] = None


class VolumeGroupInfo(BaseModel):
    """Serialised volume group."""
    object_path: str
    name: str
    display_name: Optional[str] = None
    uuid: Optional[str] = None
    size: int = 0
    free_size: int = 0
    extent_size: int = 0
    needs_polling: bool = False
    logical_volumes: List[str] = Field(default_factory=list)


class ObjectPathResponse(BaseModel):
    """Result of an operation that yields a new object."""
    object_path: str


class DeleteRequest(BaseModel):
    wipe: bool = False


class RenameRequest(BaseModel):
    new_name: str = Field(..., min_length=1)


class AddDeviceRequest(BaseModel):
    block: str = Field(..., description="Object path of the block device to add")


class RemoveDeviceRequest(BaseModel):
    block: str = Field(..., description="Object path of the member block device")
    wipe: bool = False


class EmptyDeviceRequest(BaseModel):
    block: str = Field(..., description="Object path of the member block device")
    no_block: bool = Field(False, description="Run the move in the background")


class CreatePlainVolumeRequest(BaseModel):
    name: str = Field(..., min_length=1)
    size: int = Field(..., gt=0)
    stripes: int = Field(0, ge=0)
    stripe_size: int = Field(0, ge=0)


class CreateThinPoolRequest(BaseModel):
    name: str = Field(..., min_length=1)
    size: int = Field(..., gt=0)


class CreateThinVolumeRequest(BaseModel):
    name: str = Field(..., min_length=1)
    size: int = Field(..., gt=0)
    pool: str = Field(..., description="Object path of the thin pool volume")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    timestamp: datetime
    volume_groups: int = 0
    running_jobs: int = 0
