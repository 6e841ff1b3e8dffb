"""Exception hierarchy for the volume group manager.

Fetch and reconcile errors are recoverable at poll-cycle granularity,
job and precondition errors at request granularity. None of them is
fatal to the process.
"""

from __future__ import annotations

from typing import Optional


class VgManagerError(Exception):
    """Base exception for all volume group manager failures."""


class FetchError(VgManagerError):
    """Raised when the inventory helper fails to produce a snapshot."""

    def __init__(self, group_name: Optional[str], message: str):
        super().__init__(message)
        self.group_name = group_name
        self.detail = message


class ReconcileSkip(VgManagerError):
    """Raised for a single malformed snapshot record."""


class CommandError(VgManagerError):
    """Raised when a subprocess exits unsuccessfully."""

    def __init__(self, command: str, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode


class PreconditionError(VgManagerError):
    """Raised synchronously before any job is spawned."""


class JobFailure(VgManagerError):
    """A spawned job finished unsuccessfully.

    ``message`` carries the job's failure text verbatim; ``str()`` adds the
    operation prefix shown to callers.
    """

    def __init__(self, message: str, prefix: Optional[str] = None):
        self.message = message
        self.prefix = prefix
        super().__init__(f"{prefix}: {message}" if prefix else message)


class UnknownObjectError(VgManagerError):
    """Raised when a requested volume group or volume is not known."""
