"""Subprocess execution for inventory fetches and storage jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..core.errors import CommandError, FetchError

logger = logging.getLogger(__name__)


def _command_environment() -> dict:
    return {**os.environ, "LC_ALL": "C.UTF-8"}


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    argv: tuple
    returncode: int
    stdout: str
    stderr: str


def check_status_and_output(name: str, result: CommandResult) -> None:
    """Raise :class:`CommandError` when ``result`` reports a failure."""

    if result.returncode == 0:
        if result.stderr.strip():
            logger.debug("%s succeeded with stderr output: %s", name, result.stderr.strip())
        return

    if result.returncode < 0:
        message = f"{name} was signaled with signal {-result.returncode}"
    else:
        message = f"{name} exited with non-zero exit status {result.returncode}"
    detail = (result.stderr or result.stdout).strip()
    if detail:
        message = f"{message}: {detail}"
    raise CommandError(name, message, result.returncode)


class SpawnedProcess:
    """Handle for one asynchronous inventory fetch.

    ``result()`` resolves to the decoded JSON document or raises
    :class:`FetchError`. ``terminate()`` is best effort and never waits.
    """

    def __init__(self, argv: Sequence[str], group_name: Optional[str] = None) -> None:
        self.argv = tuple(argv)
        self.group_name = group_name
        self._process: Optional[asyncio.subprocess.Process] = None
        self._terminated = False
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> Any:
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                close_fds=True,
                env=_command_environment(),
            )
        except OSError as exc:
            raise FetchError(self.group_name, f"Failed to spawn {self.argv[0]}: {exc}") from exc

        if self._terminated:
            self._send_interrupt()

        out, err = await self._process.communicate()
        result = CommandResult(
            self.argv,
            self._process.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )
        try:
            check_status_and_output(self.argv[0], result)
        except CommandError as exc:
            raise FetchError(self.group_name, str(exc)) from exc

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise FetchError(
                self.group_name, f"Unable to decode output of {self.argv[0]}: {exc}"
            ) from exc

    async def result(self) -> Any:
        return await self._task

    def done(self) -> bool:
        return self._task.done()

    def _send_interrupt(self) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        try:
            self._process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass

    def terminate(self) -> None:
        self._terminated = True
        self._send_interrupt()


class CommandRunner:
    """Runs external commands on behalf of the daemon."""

    async def run(self, argv: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        logger.debug("Running %s", " ".join(argv))
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            close_fds=True,
            env=_command_environment(),
        )
        out, err = await process.communicate(
            input_text.encode("utf-8") if input_text is not None else None
        )
        return CommandResult(
            tuple(argv),
            process.returncode,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    def run_sync(self, argv: Sequence[str]) -> CommandResult:
        """Blocking variant for use from worker threads only."""
        logger.debug("Running %s (blocking)", " ".join(argv))
        completed = subprocess.run(
            list(argv),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            close_fds=True,
            env=_command_environment(),
        )
        return CommandResult(
            tuple(argv),
            completed.returncode,
            completed.stdout.decode("utf-8", errors="replace"),
            completed.stderr.decode("utf-8", errors="replace"),
        )

    async def check_call(self, argv: Sequence[str]) -> CommandResult:
        try:
            result = await self.run(argv)
        except OSError as exc:
            raise CommandError(argv[0], f"Failed to spawn {argv[0]}: {exc}") from exc
        check_status_and_output(argv[0], result)
        return result

    def check_call_sync(self, argv: Sequence[str]) -> CommandResult:
        try:
            result = self.run_sync(argv)
        except OSError as exc:
            raise CommandError(argv[0], f"Failed to spawn {argv[0]}: {exc}") from exc
        check_status_and_output(argv[0], result)
        return result

    async def run_json(self, argv: Sequence[str], group_name: Optional[str] = None) -> Any:
        """Run ``argv`` to completion and decode its JSON output."""
        return await self.spawn_for_json(argv, group_name).result()

    def spawn_for_json(
        self, argv: Sequence[str], group_name: Optional[str] = None
    ) -> SpawnedProcess:
        return SpawnedProcess(argv, group_name)

    def wipe_block(self, device: str) -> None:
        """Erase signatures from ``device``. Blocking."""
        self.check_call_sync(["wipefs", "-a", device])


command_runner = CommandRunner()
