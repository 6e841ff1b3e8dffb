"""Registry and execution of long-running storage jobs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..core.config import settings
from ..core.models import Job, JobStatus
from .command_runner import CommandRunner, check_status_and_output, command_runner
from .websocket_service import websocket_manager

logger = logging.getLogger(__name__)

CompletedCallback = Callable[[bool, str], None]


class JobHandle:
    """Runtime side of a job: its task and completion listeners.

    The ``completed`` event fires exactly once per job.
    """

    def __init__(self, job: Job) -> None:
        self.job = job
        self.task: Optional[asyncio.Task[None]] = None
        self._listeners: List[CompletedCallback] = []
        self._done = asyncio.get_running_loop().create_future()

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def completed(self) -> bool:
        return self._done.done()

    def connect_completed(self, callback: CompletedCallback) -> None:
        if self.completed:
            success, message = self._done.result()
            callback(success, message)
            return
        self._listeners.append(callback)

    async def wait(self) -> tuple:
        return await asyncio.shield(self._done)

    def _emit_completed(self, success: bool, message: str) -> None:
        if self._done.done():
            return
        self._done.set_result((success, message))
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback(success, message)
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Completion listener failed for job %s", self.job_id)


class JobService:
    """Service for tracking and executing jobs.

    Jobs are only mutated on the event loop; threaded job bodies run in a
    worker thread and report back through their task.
    """

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self.jobs: Dict[str, JobHandle] = {}
        self._runner = runner or command_runner
        self._completion_hooks: List[Callable[[JobHandle], None]] = []
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Job service initialised")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        running = [handle.task for handle in self.jobs.values() if handle.task and not handle.task.done()]
        if running:
            _, pending = await asyncio.wait(running, timeout=5.0)
            for task in pending:
                logger.warning("Job task did not complete within timeout, cancelling")
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Job service stopped")

    def add_completion_hook(self, hook: Callable[[JobHandle], None]) -> None:
        """Register ``hook`` to run after every job completes."""
        self._completion_hooks.append(hook)

    def remove_completion_hook(self, hook: Callable[[JobHandle], None]) -> None:
        if hook in self._completion_hooks:
            self._completion_hooks.remove(hook)

    def launch_spawned_job(
        self,
        operation: str,
        objects: Sequence[str],
        caller_uid: int,
        argv: Sequence[str],
        input_text: Optional[str] = None,
    ) -> JobHandle:
        """Run ``argv`` as a job; success means a zero exit status."""

        async def body() -> None:
            result = await self._runner.run(argv, input_text=input_text)
            check_status_and_output(argv[0], result)

        return self._launch(operation, objects, caller_uid, body, " ".join(argv))

    def launch_threaded_job(
        self,
        operation: str,
        objects: Sequence[str],
        caller_uid: int,
        func: Callable[[], Any],
    ) -> JobHandle:
        """Run the blocking ``func`` in a worker thread as a job."""

        async def body() -> None:
            await asyncio.to_thread(func)

        return self._launch(operation, objects, caller_uid, body, getattr(func, "__name__", "thread"))

    def _launch(
        self,
        operation: str,
        objects: Sequence[str],
        caller_uid: int,
        body: Callable[[], Awaitable[None]],
        description: str,
    ) -> JobHandle:
        if not self._started:
            raise RuntimeError("Job service is not running")

        job = Job(
            job_id=str(uuid.uuid4()),
            operation=operation,
            objects=list(objects),
            started_by_uid=caller_uid,
            created_at=datetime.now(timezone.utc),
        )
        handle = JobHandle(job)
        self.jobs[job.job_id] = handle
        handle.task = asyncio.get_running_loop().create_task(
            self._run_job(handle, body), name=f"job-{operation}-{job.job_id}"
        )
        logger.info("Launched %s job %s (%s)", operation, job.job_id, description)
        self._broadcast_job_status(job)
        return handle

    async def _run_job(self, handle: JobHandle, body: Callable[[], Awaitable[None]]) -> None:
        job = handle.job
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        self._broadcast_job_status(job)

        success = False
        message = ""
        try:
            await asyncio.wait_for(body(), timeout=settings.job_timeout_seconds)
            success = True
        except asyncio.TimeoutError:
            message = f"Job timed out after {settings.job_timeout_seconds:.0f} seconds"
        except asyncio.CancelledError:
            message = "Job was cancelled"
            raise
        except Exception as exc:
            message = str(exc)
        finally:
            job.status = JobStatus.COMPLETED if success else JobStatus.FAILED
            job.completed_at = datetime.now(timezone.utc)
            job.message = message or None
            if success:
                job.progress = 1.0
                logger.info("Job %s (%s) completed", job.job_id, job.operation)
            else:
                logger.error("Job %s (%s) failed: %s", job.job_id, job.operation, message)
            self._broadcast_job_status(job)
            handle._emit_completed(success, message)
            for hook in list(self._completion_hooks):
                try:
                    hook(handle)
                except Exception:  # pragma: no cover - defensive logging
                    logger.exception("Job completion hook failed for %s", job.job_id)

    def list_active_jobs(self, operation: Optional[str] = None) -> List[Job]:
        """Return jobs that have not finished, optionally filtered by tag."""
        return [
            handle.job
            for handle in self.jobs.values()
            if handle.job.status in (JobStatus.PENDING, JobStatus.RUNNING)
            and (operation is None or handle.job.operation == operation)
        ]

    def set_progress(self, job_id: str, progress: float) -> Optional[Job]:
        handle = self.jobs.get(job_id)
        if handle is None:
            return None
        job = handle.job
        changed = not job.progress_valid or job.progress != progress
        job.progress = progress
        job.progress_valid = True
        if changed:
            self._broadcast_job_status(job)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        handle = self.jobs.get(job_id)
        return handle.job.model_copy(deep=True) if handle else None

    def get_all_jobs(self) -> List[Job]:
        return [handle.job.model_copy(deep=True) for handle in self.jobs.values()]

    def get_running_jobs_count(self) -> int:
        return len(self.list_active_jobs())

    def get_metrics(self) -> Dict[str, Any]:
        status_counts = {status: 0 for status in JobStatus}
        for handle in self.jobs.values():
            status_counts[handle.job.status] += 1
        return {
            "started": self._started,
            "pending_jobs": status_counts[JobStatus.PENDING],
            "running_jobs": status_counts[JobStatus.RUNNING],
            "completed_jobs": status_counts[JobStatus.COMPLETED],
            "failed_jobs": status_counts[JobStatus.FAILED],
            "total_tracked_jobs": len(self.jobs),
        }

    def _broadcast_job_status(self, job: Job) -> None:
        websocket_manager.schedule_broadcast(
            {
                "type": "job",
                "action": "status",
                "job_id": job.job_id,
                "data": job.model_dump(mode="json"),
            },
            topic="jobs",
        )


job_service = JobService()
