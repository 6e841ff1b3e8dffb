"""Single-flight, debounced inventory refresh scheduling."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from ..core.errors import FetchError

logger = logging.getLogger(__name__)


class FetchHandle(Protocol):
    """An in-flight inventory fetch."""

    async def result(self) -> Any: ...

    def terminate(self) -> None: ...


FetchLauncher = Callable[[], FetchHandle]
ResultCallback = Callable[[Optional[Any], Optional[FetchError]], None]


class PollState(str, Enum):
    IDLE = "idle"
    RETRIGGER_PENDING = "idle-with-pending-retrigger"
    FETCH_IN_FLIGHT = "fetch-in-flight"
    FETCH_IN_FLIGHT_PENDING = "fetch-in-flight-with-pending-retrigger"


class PollScheduler:
    """Coalesces refresh requests into as few fetches as possible.

    Every launched fetch arms a refresh timer. Requests arriving while the
    timer is armed only set a retrigger flag; on expiry the flag launches
    one more fetch. Launching supersedes any fetch still running: it is sent
    a termination request and its result is dropped when it arrives. Only
    the most recently launched fetch reaches ``on_result``.
    """

    def __init__(
        self,
        name: str,
        launch: FetchLauncher,
        on_result: ResultCallback,
        interval: float = 5.0,
    ) -> None:
        self.name = name
        self._launch = launch
        self._on_result = on_result
        self._interval = interval
        self._current: Optional[FetchHandle] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._poll_requested = False
        self._tasks: "set[asyncio.Task[None]]" = set()
        self._stopped = False
        self.fetches_launched = 0

    @property
    def state(self) -> PollState:
        if self._current is None:
            if self._poll_requested:
                return PollState.RETRIGGER_PENDING
            return PollState.IDLE
        if self._poll_requested:
            return PollState.FETCH_IN_FLIGHT_PENDING
        return PollState.FETCH_IN_FLIGHT

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def request_poll(self) -> None:
        if self._stopped:
            return
        if self._timer is not None:
            logger.debug("Coalescing poll request for %s", self.name)
            self._poll_requested = True
        else:
            self._poll_now()

    def _poll_now(self) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._interval, self._on_timer)

        if self._current is not None:
            logger.debug("Superseding running fetch for %s", self.name)
            self._current.terminate()

        handle = self._launch()
        self._current = handle
        self.fetches_launched += 1
        task = loop.create_task(self._await_fetch(handle), name=f"poll-{self.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_timer(self) -> None:
        self._timer = None
        if self._poll_requested:
            self._poll_requested = False
            self._poll_now()

    async def _await_fetch(self, handle: FetchHandle) -> None:
        snapshot: Optional[Any] = None
        error: Optional[FetchError] = None
        try:
            snapshot = await handle.result()
        except FetchError as exc:
            error = exc

        if handle is not self._current:
            logger.debug("Discarding superseded fetch result for %s", self.name)
            return
        self._current = None
        if self._stopped:
            return
        try:
            self._on_result(snapshot, error)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Applying refresh result for %s failed", self.name)

    async def stop(self) -> None:
        """Disarm the timer and abandon any running fetch."""
        self._stopped = True
        self._poll_requested = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._current is not None:
            self._current.terminate()
            self._current = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
