"""Process launcher with subprocess isolation and reliable termination.

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- A handle owning exactly one OS process with both output pipes
- Immediate kill (SIGKILL to the process group) for cancellation
- Graceful termination (SIGTERM -> timeout -> SIGKILL) for cleanup

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Killing targets the process group, not just the main process
- "file not found" spawn failures become ExecutableNotFoundError
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import get_config
from ..errors import ExecutableNotFoundError, ProcessSpawnError

__all__ = [
    "IS_WINDOWS",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the resolved executable)
        command: Display form of the command, used in errors
        cwd: Working directory for the process (None = inherit)
        env: Environment variables (None = inherit parent)
        stdin_bytes: Optional bytes to write to stdin
        extra: Pass-through keyword arguments for create_subprocess_exec
    """

    argv: list[str]
    command: str
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    stdin_bytes: bytes | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)


class ProcessHandle:
    """Owns exactly one running OS process.

    The handle exposes both output readers and exit notification. ``kill()``
    is synchronous so that cancellation never has to await anything;
    ``terminate()`` is the graceful, awaitable variant used for cleanup.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        term_timeout: float,
        kill_timeout: float,
    ) -> None:
        self._process = process
        self._term_timeout = term_timeout
        self._kill_timeout = kill_timeout

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._process.wait()

    def kill(self) -> bool:
        """Forcibly kill the process group. Safe to call repeatedly.

        Returns:
            True if a signal was delivered
        """
        if self._process.returncode is not None:
            return False

        pid = self._process.pid
        try:
            if IS_WINDOWS:
                self._process.kill()
            else:
                self._posix_signal(signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
            return False

        logger.debug(f"Killed subprocess pid={pid}")
        return True

    async def terminate(self) -> None:
        """Terminate gracefully, then forcefully, shielded from cancellation.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        if self._process.returncode is not None:
            return

        task = asyncio.ensure_future(self._do_terminate())
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # Finish the cleanup before letting the cancellation through
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.debug(f"Double cancel during termination pid={self.pid}")
            raise

    async def _do_terminate(self) -> None:
        pid = self._process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate()
            else:
                self._posix_signal(signal.SIGTERM)

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self._term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={self._process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            self.kill()

            try:
                await asyncio.wait_for(self._process.wait(), timeout=self._kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={self._process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    def _posix_signal(self, sig: signal.Signals) -> None:
        """Send ``sig`` to the process group, falling back to the process."""
        try:
            # Same as pid because of start_new_session
            pgid = os.getpgid(self._process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            self._process.send_signal(sig)

    def _windows_terminate(self) -> None:
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(self._process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self._process.pid}")
        except OSError as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            self._process.terminate()


@dataclass
class ProcessRunner:
    """Starts isolated subprocesses and hands out their handles.

    Example:
        runner = ProcessRunner()
        handle = await runner.start(ProcessSpec(
            argv=["/usr/local/bin/stack", "--numeric-version"],
            command="stack --numeric-version",
        ))
        exit_code = await handle.wait()
    """

    term_timeout: float = field(default_factory=lambda: get_config().term_timeout)
    kill_timeout: float = field(default_factory=lambda: get_config().kill_timeout)

    async def start(
        self,
        spec: ProcessSpec,
        *,
        not_found: ExecutableNotFoundError | None = None,
    ) -> ProcessHandle:
        """Start the subprocess described by ``spec``.

        Args:
            spec: Process specification
            not_found: Error to raise when the OS cannot find the executable

        Returns:
            Handle owning the started process

        Raises:
            ExecutableNotFoundError: The OS reports the executable missing
            ProcessSpawnError: Any other OS failure, or launch keywords the
                OS process API rejects
        """
        kwargs = self._build_subprocess_kwargs(spec)

        try:
            # DEVNULL rather than None so the child never shares our stdin
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE if spec.stdin_bytes is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except FileNotFoundError as e:
            if not_found is not None and not _is_cwd_error(e, spec.cwd):
                raise not_found from e
            raise ProcessSpawnError(
                f"Failed to start `{spec.command}`: {e}", command=spec.command
            ) from e
        except (OSError, TypeError, ValueError) as e:
            # TypeError/ValueError: launch keywords rejected by Popen
            raise ProcessSpawnError(
                f"Failed to start `{spec.command}`: {e}", command=spec.command
            ) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )

        handle = ProcessHandle(
            process,
            term_timeout=self.term_timeout,
            kill_timeout=self.kill_timeout,
        )

        if spec.stdin_bytes is not None and process.stdin:
            try:
                process.stdin.write(spec.stdin_bytes)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # The child exited without reading its input
                logger.debug(f"Subprocess closed stdin early pid={process.pid}")
            finally:
                process.stdin.close()

        return handle

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Equivalent to setsid
            kwargs["start_new_session"] = True

        kwargs.update(spec.extra)
        return kwargs


def _is_cwd_error(error: FileNotFoundError, cwd: Path | None) -> bool:
    """Whether the missing file is the working directory, not the executable."""
    if cwd is None or error.filename is None:
        return False
    return os.fspath(error.filename) == os.fspath(cwd)
