"""Correlation of job completion with the publication of expected objects.

A mutating request that creates or renames something must not be answered
when its job exits but when the new object is visible to clients. A
:class:`CompletionWaiter` listens to both events and resolves the caller's
:class:`Invocation` from whichever one carries definitive information:

* job failed -> failure, with the job's message verbatim;
* expected object published -> success, with the object's path;
* job succeeded -> success only for operations that have no object to
  wait for (``expected_name`` is None).

Resolution happens at most once and detaches the waiter from the registry.
A caller that gives up calls :meth:`Invocation.abandon`, which detaches the
waiter without resolving it.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, List, Optional

from ..core.errors import JobFailure
from .job_service import JobHandle
from .object_registry import ObjectRegistry

logger = logging.getLogger(__name__)


class Invocation:
    """Pending RPC call that completes exactly once."""

    def __init__(self, method: str = "") -> None:
        self.method = method
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.waiter: Optional["CompletionWaiter"] = None

    @property
    def done(self) -> bool:
        return self._future.done()

    def return_value(self, value: Any = None) -> bool:
        if self._future.done():
            logger.debug("Ignoring second completion of %s", self.method or "invocation")
            return False
        self._future.set_result(value)
        return True

    def return_error(self, error: BaseException) -> bool:
        if self._future.done():
            logger.debug("Ignoring second error for %s: %s", self.method or "invocation", error)
            return False
        self._future.set_exception(error)
        return True

    async def wait(self, timeout: Optional[float] = None) -> Any:
        return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)

    def result(self) -> Any:
        return self._future.result()

    def abandon(self) -> None:
        """Release the waiter of a caller that stopped listening."""
        waiter = self.waiter
        if waiter is not None and not waiter.resolved:
            waiter.state = WaiterState.ABANDONED
            waiter.detach()
        if not self._future.done():
            self._future.cancel()


class WaiterState(str, Enum):
    WAITING = "waiting"
    RESOLVED_SUCCESS = "resolved-success"
    RESOLVED_FAILURE = "resolved-failure"
    ABANDONED = "abandoned"


class CompletionWaiter:
    """Pairs one invocation with its job and expected object."""

    def __init__(
        self,
        bridge: "JobCompletionBridge",
        invocation: Invocation,
        entity_type: Optional[type] = None,
        expected_name: Optional[str] = None,
        owner: Optional[str] = None,
        error_prefix: Optional[str] = None,
    ) -> None:
        self._bridge = bridge
        self.invocation = invocation
        self.entity_type = entity_type
        self.expected_name = expected_name
        self.owner = owner
        self.error_prefix = error_prefix
        self.state = WaiterState.WAITING
        self.handler_id: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.state is not WaiterState.WAITING

    def on_job_completed(self, success: bool, message: str) -> None:
        if self.resolved:
            return
        if not success:
            self._resolve_failure(message)
        elif self.expected_name is None:
            self._resolve_success(None)

    def on_entity_published(self, path: str, entity: Any) -> None:
        if self.resolved or self.expected_name is None:
            return
        if getattr(entity, "name", None) != self.expected_name:
            return
        if self.owner is not None and getattr(entity, "owner_name", None) != self.owner:
            return
        self._resolve_success(path)

    def _resolve_success(self, value: Any) -> None:
        self.state = WaiterState.RESOLVED_SUCCESS
        self.detach()
        self.invocation.return_value(value)

    def _resolve_failure(self, message: str) -> None:
        self.state = WaiterState.RESOLVED_FAILURE
        self.detach()
        self.invocation.return_error(JobFailure(message, self.error_prefix))

    def detach(self) -> None:
        self._bridge._detach(self)


class JobCompletionBridge:
    """Creates and tracks completion waiters."""

    def __init__(self, registry: ObjectRegistry) -> None:
        self._registry = registry
        self._waiters: List[CompletionWaiter] = []

    def register(
        self,
        invocation: Invocation,
        job: Optional[JobHandle] = None,
        entity_type: Optional[type] = None,
        expected_name: Optional[str] = None,
        owner: Optional[str] = None,
        error_prefix: Optional[str] = None,
    ) -> CompletionWaiter:
        """Wait for ``job`` and, if given, the publication of ``expected_name``."""
        if expected_name is not None and entity_type is None:
            raise ValueError("entity_type is required when waiting for an object")

        waiter = CompletionWaiter(
            self, invocation, entity_type, expected_name, owner, error_prefix
        )
        self._waiters.append(waiter)
        invocation.waiter = waiter
        if expected_name is not None:
            waiter.handler_id = self._registry.connect(entity_type, waiter.on_entity_published)
        if job is not None:
            job.connect_completed(waiter.on_job_completed)
        return waiter

    def _detach(self, waiter: CompletionWaiter) -> None:
        if waiter.handler_id is not None:
            self._registry.disconnect(waiter.handler_id)
            waiter.handler_id = None
        if waiter in self._waiters:
            self._waiters.remove(waiter)

    def pending_count(self) -> int:
        return len(self._waiters)

    def teardown(self) -> None:
        """Detach every waiter still pending; their callers are told so."""
        for waiter in list(self._waiters):
            waiter.detach()
            if not waiter.resolved:
                waiter.state = WaiterState.RESOLVED_FAILURE
                waiter.invocation.return_error(
                    JobFailure("Service is shutting down", waiter.error_prefix)
                )
