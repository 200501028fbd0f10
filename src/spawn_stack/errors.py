"""Error taxonomy for spawn-stack.

Validation errors (``ArityError``, ``TypeError``, ``ValueError``) are raised
synchronously by ``spawn_stack()`` before anything is scheduled. Everything
else derives from ``SpawnStackError`` and is delivered identically to the
deferred result and to stream subscribers.
"""

from __future__ import annotations

import signal

__all__ = [
    "ArityError",
    "CommandFailedError",
    "ExecutableNotFoundError",
    "ProcessCancelledError",
    "ProcessSpawnError",
    "SpawnStackError",
]


class ArityError(TypeError):
    """Wrong number of positional arguments."""


class SpawnStackError(Exception):
    """Base class for failures of a launched (or launching) invocation."""


class ExecutableNotFoundError(SpawnStackError, FileNotFoundError):
    """The wrapped executable could not be found on the search path."""

    def __init__(self, message: str, *, executable: str, help_url: str) -> None:
        super().__init__(message)
        self.executable = executable
        self.help_url = help_url

    def __str__(self) -> str:
        return self.args[0]


class ProcessSpawnError(SpawnStackError):
    """The OS refused to start the process for a reason other than "not found"."""

    def __init__(self, message: str, *, command: str) -> None:
        super().__init__(message)
        self.command = command


class CommandFailedError(SpawnStackError):
    """The process ran and exited with a non-zero code.

    Attributes:
        command: Tool name and arguments joined by single spaces
        exit_code: Process exit code (negative when killed by a signal)
        stdout: Captured standard output
        stderr: Captured standard error
        signal_name: Name of the terminating signal, if any
    """

    def __init__(
        self,
        command: str,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.signal_name = _signal_name(exit_code)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [f"Command failed: {self.command}"]
        if self.stderr:
            lines.append(self.stderr)
        if self.stdout:
            lines.append(self.stdout)
        return "\n".join(lines)


class ProcessCancelledError(SpawnStackError):
    """The invocation was cancelled before the process exited on its own."""

    def __init__(self, command: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(f"Command was cancelled: {command}")
        self.command = command
        self.stdout = stdout
        self.stderr = stderr


def _signal_name(exit_code: int) -> str | None:
    if exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return None
