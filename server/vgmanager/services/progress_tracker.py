"""Attribution of data-move progress to externally visible jobs."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .block_service import BlockService
from .job_service import JobService

logger = logging.getLogger(__name__)

# Copy percentages are reported in parts per hundred million.
COPY_PERCENT_SCALE = 100000000.0

EMPTY_DEVICE_OPERATION = "lvm-vg-empty-device"


def normalise_copy_percent(raw: Any) -> Optional[float]:
    """Convert a raw copy percentage to a fraction in [0.0, 1.0]."""
    try:
        value = float(raw) / COPY_PERCENT_SCALE
    except (TypeError, ValueError):
        return None
    return min(max(value, 0.0), 1.0)


class ProgressTracker:
    """Maps a move operation's progress onto the jobs that target a device.

    The move reports its target by whatever path it was given, so a job's
    block devices are matched on primary path first and aliases second.
    """

    def __init__(self, jobs: JobService, blocks: BlockService) -> None:
        self._jobs = jobs
        self._blocks = blocks

    def attribute_progress(self, operation: str, device: str, fraction: float) -> int:
        """Set ``fraction`` on matching jobs; returns how many were updated."""
        updated = 0
        for job in self._jobs.list_active_jobs(operation):
            for object_path in job.objects:
                block = self._blocks.find(object_path)
                if block is None or not self._blocks.matches(block, device):
                    continue
                self._jobs.set_progress(job.job_id, fraction)
                updated += 1
                logger.debug(
                    "Progress of %s job %s on %s is %.2f%%",
                    operation, job.job_id, device, fraction * 100,
                )
                break
        return updated
