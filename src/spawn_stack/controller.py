"""Dual-protocol invocation controller.

``spawn_stack()`` returns a ``StackProcess``, which is at the same time:

- a deferred result: ``await proc`` gives a ``StackResult`` once the process
  exits with code 0 and raises a ``SpawnStackError`` otherwise;
- a stream source: ``proc.subscribe(...)`` and ``async for event in proc``
  deliver ``LineEvent``s as the process writes them.

Both protocols are backed by one run task owning one ``ProcessHandle``.
Subscribers are notified of the outcome strictly before the deferred result
settles. Cancelling the last consumer (subscription, iterator or awaiting
task) kills the process, after which the deferred result raises
``ProcessCancelledError``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any, Generator, Optional

import anyio

from .errors import CommandFailedError, ProcessCancelledError, SpawnStackError
from .locator import locate_executable, not_found_error
from .runtime import ProcessHandle, ProcessRunner, ProcessSpec, StreamMultiplexer
from .subscription import CompleteCallback, ErrorCallback, NextCallback, Subscription
from .types import STACK, InvocationRequest, LineEvent, StackResult, ToolSpec, strip_final_newline
from .validation import validate_arguments

__all__ = ["StackProcess", "spawn_stack"]

logger = logging.getLogger(__name__)


class StackProcess:
    """One invocation of the wrapped tool, consumable two ways.

    Example:
        proc = spawn_stack(["unpack", "array-0.5.1.1"])

        async for event in proc:
            print(event.channel.value, event.text)

        result = await proc  # same process, same buffered output

    Must be created inside a running event loop; the process is started
    right away, independent of how (or whether) it is consumed.
    """

    def __init__(
        self,
        request: InvocationRequest,
        *,
        platform: str,
        runner: ProcessRunner,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._request = request
        self._platform = platform
        self._runner = runner

        self._handle: ProcessHandle | None = None
        self._multiplexer = StreamMultiplexer(
            self._dispatch, encoding=request.options.encoding
        )
        self._subscribers: list[Subscription] = []
        self._waiters = 0

        self._cancel_requested = False
        self._settled = False
        self._result: StackResult | None = None
        self._error: BaseException | None = None
        self._future: asyncio.Future[StackResult] = self._loop.create_future()

        self._task = self._loop.create_task(self._run())

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def command(self) -> str:
        """Tool name and arguments joined by single spaces."""
        return self._request.command

    @property
    def request(self) -> InvocationRequest:
        return self._request

    @property
    def pid(self) -> int | None:
        """PID of the process, None until it has been started."""
        return self._handle.pid if self._handle else None

    @property
    def returncode(self) -> int | None:
        return self._handle.returncode if self._handle else None

    def done(self) -> bool:
        """Whether the outcome is settled."""
        return self._settled

    def cancelled(self) -> bool:
        """Whether cancellation was requested before the outcome settled."""
        return self._cancel_requested

    def __repr__(self) -> str:
        if self._settled:
            state = "failed" if self._error is not None else "succeeded"
        else:
            state = "running" if self._handle else "pending"
        return f"StackProcess(command={self.command!r}, pid={self.pid}, state={state})"

    # =========================================================================
    # Deferred result protocol
    # =========================================================================

    def __await__(self) -> Generator[Any, None, StackResult]:
        return self.wait().__await__()

    async def wait(self) -> StackResult:
        """Wait for the process and return its buffered output.

        Cancelling the awaiting task releases this waiter; if nothing else
        consumes the invocation any more, the process is killed.

        Raises:
            CommandFailedError: Non-zero exit code
            ExecutableNotFoundError: ``stack`` is not installed
            ProcessSpawnError: The OS refused to start the process
            ProcessCancelledError: The invocation was cancelled
        """
        if self._future.done():
            return self._future.result()

        self._waiters += 1
        released = False
        try:
            return await asyncio.shield(self._future)
        except asyncio.CancelledError:
            if not self._future.done():
                self._waiters -= 1
                released = True
                if not self._has_consumers():
                    logger.debug(f"Last waiter of {self.command} was cancelled")
                    self.cancel()
            raise
        finally:
            if not released:
                self._waiters -= 1

    # =========================================================================
    # Stream protocol
    # =========================================================================

    def subscribe(
        self,
        on_next: Optional[NextCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> Subscription:
        """Register callbacks for line events from now on.

        There is no replay: earlier lines are not delivered. Subscribing
        after the outcome settled only delivers the terminal notification.

        Args:
            on_next: Called with each ``LineEvent``
            on_error: Called once with the failure of the invocation
            on_complete: Called once after a successful exit

        Returns:
            Subscription that can be cancelled with ``unsubscribe()``
        """
        subscription = Subscription(self, on_next, on_error, on_complete)

        if self._settled:
            self._notify_terminal(subscription)
            return subscription

        self._subscribers.append(subscription)
        return subscription

    def __aiter__(self) -> AsyncIterator[LineEvent]:
        return self.lines()

    async def lines(self) -> AsyncIterator[LineEvent]:
        """Iterate over line events, raising the failure at the end.

        Leaving the loop early releases this consumer like
        ``Subscription.unsubscribe()`` does.
        """
        send, receive = anyio.create_memory_object_stream(math.inf)
        failure: list[BaseException] = []

        def on_error(error: BaseException) -> None:
            failure.append(error)
            send.close()

        subscription = self.subscribe(send.send_nowait, on_error, send.close)
        try:
            async with receive:
                async for event in receive:
                    yield event
        finally:
            subscription.unsubscribe()
            send.close()

        if failure:
            raise failure[0]

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self) -> bool:
        """Kill the process (or prevent it from starting).

        Never raises. After a successful cancel the deferred result raises
        ``ProcessCancelledError`` and remaining subscribers receive it as
        their terminal error.

        Returns:
            True if the call had an effect
        """
        if self._settled or self._cancel_requested:
            return False

        self._cancel_requested = True
        self._multiplexer.stop()
        logger.info(f"Cancelling `{self.command}` (pid={self.pid})")

        if self._handle is not None:
            try:
                self._handle.kill()
            except OSError as e:
                logger.warning(f"Failed to kill `{self.command}` pid={self.pid}: {e}")
        return True

    def _release_subscription(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not self._settled and not self._has_consumers():
            logger.debug(f"Last subscriber of {self.command} unsubscribed")
            self.cancel()

    def _has_consumers(self) -> bool:
        return bool(self._subscribers) or self._waiters > 0

    # =========================================================================
    # Run task
    # =========================================================================

    async def _run(self) -> None:
        try:
            result = await self._execute()
        except SpawnStackError as e:
            self._settle(error=e)
        except asyncio.CancelledError:
            self._cancel_requested = True
            self._settle(error=self._cancelled_error())
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while running `{self.command}`")
            self._settle(error=e)
        else:
            self._settle(result=result)

    async def _execute(self) -> StackResult:
        request = self._request
        if self._cancel_requested:
            raise self._cancelled_error()

        env = request.effective_env()
        executable = locate_executable(request.tool, env, platform=self._platform)

        cwd = request.options.cwd
        spec = ProcessSpec(
            argv=[executable, *request.args],
            command=request.command,
            cwd=Path(cwd) if cwd is not None else None,
            env=env,
            stdin_bytes=request.options.stdin_bytes(),
            extra=request.options.passthrough,
        )

        logger.info(f"Executing: {request.command}")
        handle = await self._runner.start(
            spec, not_found=not_found_error(request.tool, self._platform)
        )
        self._handle = handle
        if self._cancel_requested:
            handle.kill()

        try:
            await self._multiplexer.run(handle.stdout, handle.stderr)
            exit_code = await handle.wait()
        finally:
            if handle.returncode is None:
                await handle.terminate()

        stdout = strip_final_newline(self._multiplexer.stdout_text)
        stderr = strip_final_newline(self._multiplexer.stderr_text)
        logger.debug(
            f"Subprocess exited pid={handle.pid} returncode={exit_code} "
            f"stdout={len(stdout)} chars stderr={len(stderr)} chars"
        )

        if self._cancel_requested:
            raise ProcessCancelledError(request.command, stdout, stderr)
        if exit_code != 0:
            logger.info(f"`{request.command}` exited with code {exit_code}")
            raise CommandFailedError(request.command, exit_code, stdout, stderr)

        return StackResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            command=request.command,
        )

    def _cancelled_error(self) -> ProcessCancelledError:
        return ProcessCancelledError(
            self.command,
            strip_final_newline(self._multiplexer.stdout_text),
            strip_final_newline(self._multiplexer.stderr_text),
        )

    # =========================================================================
    # Fan-out
    # =========================================================================

    def _dispatch(self, event: LineEvent) -> None:
        for subscription in list(self._subscribers):
            self._call_subscriber(subscription, subscription._next, event)

    def _settle(
        self,
        *,
        result: StackResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        if self._settled:
            return
        self._settled = True
        self._result = result
        self._error = error

        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            self._notify_terminal(subscription)

        if error is None:
            self._future.set_result(result)
            return

        self._future.set_exception(error)
        if subscribers or self._cancel_requested:
            # Already delivered to subscribers, or cancelled on purpose
            self._future.exception()

    def _notify_terminal(self, subscription: Subscription) -> None:
        if self._error is not None:
            self._call_subscriber(subscription, subscription._error, self._error)
        else:
            self._call_subscriber(subscription, subscription._complete)

    def _call_subscriber(
        self,
        subscription: Subscription,
        callback: Callable[..., None],
        *args: Any,
    ) -> None:
        try:
            callback(*args)
        except Exception as e:
            self._loop.call_exception_handler({
                "message": f"Exception in subscriber of `{self.command}`",
                "exception": e,
                "subscription": subscription,
            })


def spawn_stack(
    *args: Any,
    platform: str | None = None,
    tool: ToolSpec = STACK,
    runner: ProcessRunner | None = None,
) -> StackProcess:
    """Run ``stack`` with the given arguments.

    Signature: ``spawn_stack(args, options=None)``. The positional arguments
    are validated synchronously; the process is started on the running
    event loop.

    Args:
        *args: ``args`` (sequence of str) and optional ``options`` mapping
            (``cwd``, ``env``, ``extend_env``, ``input``, ``encoding`` and
            pass-through keywords for ``asyncio.create_subprocess_exec``)
        platform: Platform used for install hints (default ``sys.platform``)
        tool: Wrapped tool description
        runner: Process runner (default: one configured from the environment)

    Returns:
        StackProcess that is both awaitable and async-iterable

    Raises:
        ArityError: Not 1 or 2 positional arguments
        TypeError: Invalid arguments or options
        ValueError: Reserved option keys
        RuntimeError: No running event loop
    """
    request = validate_arguments(args, tool=tool)
    return StackProcess(
        request,
        platform=platform if platform is not None else sys.platform,
        runner=runner or ProcessRunner(),
    )
