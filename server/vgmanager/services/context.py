"""Explicitly passed bundle of the daemon's collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..core.config import Settings, settings as default_settings
from .block_service import BlockService
from .command_runner import CommandRunner, command_runner
from .completion_bridge import JobCompletionBridge
from .job_service import JobService, job_service
from .notification_service import NotificationService, notification_service
from .object_registry import ObjectRegistry
from .progress_tracker import ProgressTracker


@dataclass
class DaemonContext:
    """Everything the volume group core needs from the rest of the daemon."""

    objects: ObjectRegistry
    blocks: BlockService
    jobs: JobService
    runner: CommandRunner
    notifications: NotificationService
    settings: Settings = field(default_factory=lambda: default_settings)
    bridge: JobCompletionBridge = field(init=False)
    progress: ProgressTracker = field(init=False)

    def __post_init__(self) -> None:
        self.bridge = JobCompletionBridge(self.objects)
        self.progress = ProgressTracker(self.jobs, self.blocks)

    @classmethod
    def create_default(cls) -> "DaemonContext":
        registry = ObjectRegistry()
        return cls(
            objects=registry,
            blocks=BlockService(registry),
            jobs=job_service,
            runner=command_runner,
            notifications=notification_service,
        )
