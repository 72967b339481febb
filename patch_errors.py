"""
Error types raised by the patcher and the game launcher.

Everything a caller is expected to handle derives from ``PatcherError`` so a
presentation layer can catch one type and show ``str(exc)`` verbatim.
"""

from __future__ import annotations

from pathlib import Path


class PatcherError(Exception):
    """Base class for all caller-facing patcher errors."""


class ConfigurationError(PatcherError):
    """A required install root (or other setting) is not configured."""


class IOFailure(PatcherError):
    """A copy, read, write or permission change failed.

    The operation that raised it stopped at that step; work completed before
    it stays on disk and re-running the whole operation converges.
    """

    def __init__(
        self,
        path: str | Path,
        operation: str,
        cause: BaseException | None = None,
        hint: str = "",
    ):
        self.path = Path(path)
        self.operation = operation
        self.cause = cause
        message = f"failed to {operation} {self.path}"
        if cause is not None:
            message += f": {cause}"
        if hint:
            message += f"\n\n{hint}"
        super().__init__(message)


class ExternalToolFailure(PatcherError):
    """An external command (e.g. ``codesign``) exited unsuccessfully."""

    def __init__(self, tool: str, output: str, detail: str = ""):
        self.tool = tool
        self.output = output
        message = f"{tool} failed"
        if detail:
            message += f": {detail}"
        if output:
            message += f"\nOutput: {output.strip()}"
        super().__init__(message)


class PatchNotApplied(PatcherError):
    """A file the launch needs is missing; patching has not completed."""


class ProcessStateError(PatcherError):
    """The supervisor was asked to do something its current state forbids."""


class AlreadyRunning(ProcessStateError):
    def __init__(self, message: str = "game is already running"):
        super().__init__(message)


class NotRunning(ProcessStateError):
    def __init__(self, message: str = "no game process is running"):
        super().__init__(message)


class SpawnError(PatcherError):
    """The game process could not be started."""
