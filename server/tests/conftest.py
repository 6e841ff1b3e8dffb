"""Test configuration for server test suite."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from vgmanager.core.config import Settings
from vgmanager.core.errors import FetchError
from vgmanager.services.block_service import BlockService
from vgmanager.services.command_runner import CommandResult, CommandRunner
from vgmanager.services.context import DaemonContext
from vgmanager.services.job_service import JobService
from vgmanager.services.notification_service import NotificationService
from vgmanager.services.object_registry import ObjectRegistry


class FakeFetch:
    """Inventory fetch whose outcome the test decides."""

    def __init__(self, argv: Sequence[str] = (), group_name: Optional[str] = None):
        self.argv = tuple(argv)
        self.group_name = group_name
        self.terminated = False
        self._future = asyncio.get_running_loop().create_future()

    async def result(self) -> Any:
        return await self._future

    def done(self) -> bool:
        return self._future.done()

    def terminate(self) -> None:
        self.terminated = True

    def resolve(self, payload: Any) -> None:
        self._future.set_result(payload)

    def fail(self, message: str = "helper failed") -> None:
        self._future.set_exception(FetchError(self.group_name, message))


class FakeRunner(CommandRunner):
    """Records commands instead of running them.

    ``results`` maps a command name to the :class:`CommandResult` its runs
    return; ``json_results`` maps the last argument of a JSON command to its
    decoded output or to an exception to raise.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.sync_calls: List[tuple] = []
        self.results: Dict[str, CommandResult] = {}
        self.json_results: Dict[str, Any] = {}
        self.fetches: List[FakeFetch] = []
        self.release: Optional[asyncio.Event] = None

    def _result(self, argv: Sequence[str]) -> CommandResult:
        result = self.results.get(argv[0])
        if result is None:
            return CommandResult(tuple(argv), 0, "", "")
        return CommandResult(tuple(argv), result.returncode, result.stdout, result.stderr)

    async def run(self, argv, input_text=None):
        self.calls.append(tuple(argv))
        if self.release is not None:
            await self.release.wait()
        return self._result(argv)

    def run_sync(self, argv):
        self.sync_calls.append(tuple(argv))
        return self._result(argv)

    async def run_json(self, argv, group_name=None):
        self.calls.append(tuple(argv))
        value = self.json_results.get(argv[-1])
        if isinstance(value, Exception):
            raise value
        return value

    def spawn_for_json(self, argv, group_name=None):
        fetch = FakeFetch(argv, group_name)
        self.fetches.append(fetch)
        return fetch


def make_settings(**overrides) -> Settings:
    values = {
        "poll_interval_seconds": 0.05,
        "inventory_refresh_interval": 3600,
        "lvm_helper_command": "lvm-helper",
        "scan_block_devices": False,
        "request_timeout_seconds": 5.0,
        "job_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_context(runner: Optional[FakeRunner] = None, **overrides) -> DaemonContext:
    runner = runner or FakeRunner()
    registry = ObjectRegistry()
    return DaemonContext(
        objects=registry,
        blocks=BlockService(registry),
        jobs=JobService(runner=runner),
        runner=runner,
        notifications=NotificationService(),
        settings=make_settings(**overrides),
    )


async def settle(rounds: int = 5) -> None:
    """Let callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def context(runner):
    return make_context(runner)
