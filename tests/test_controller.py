"""spawn_stack() end-to-end tests against a fake `stack` executable.

Test coverage:
- "not found" diagnostics with platform specific install hints
- Deferred result: buffered output, non-zero exits, spawn failures
- Stream: subscribe(), async iteration, terminal notifications
- One process shared by every consumer
- Cancellation via unsubscribe, explicit cancel and cancelled awaiters
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path

import anyio
import pytest

from spawn_stack import (
    Channel,
    CommandFailedError,
    ExecutableNotFoundError,
    LineEvent,
    ProcessCancelledError,
    ProcessSpawnError,
    StackResult,
    spawn_stack,
)
from spawn_stack.runtime import ProcessHandle, ProcessRunner, ProcessSpec

BASE_URL = "https://docs.haskellstack.org/en/stable/install_and_upgrade/"

pytestmark = pytest.mark.integration


class CountingRunner(ProcessRunner):
    """ProcessRunner that records every start() call."""

    def __init__(self) -> None:
        super().__init__(term_timeout=0.5, kill_timeout=0.3)
        self.started: list[ProcessSpec] = []

    async def start(self, spec: ProcessSpec, **kwargs) -> ProcessHandle:
        self.started.append(spec)
        return await super().start(spec, **kwargs)


def with_cwd(options: dict, cwd: Path) -> dict:
    return {**options, "cwd": str(cwd)}


# =============================================================================
# Executable not found
# =============================================================================


class TestNotFound:
    """The tool is missing from PATH."""

    @pytest.mark.asyncio
    async def test_generic_install_url(self, empty_path_options: dict):
        with pytest.raises(ExecutableNotFoundError) as exc_info:
            await spawn_stack(["--version"], empty_path_options, platform="aix")

        assert str(exc_info.value) == (
            "`stack` command is not found in your PATH. "
            "Make sure you have installed Stack. " + BASE_URL
        )

    @pytest.mark.asyncio
    async def test_platform_specific_install_url(self, empty_path_options: dict):
        with pytest.raises(ExecutableNotFoundError) as exc_info:
            await spawn_stack(["--help"], empty_path_options, platform="freebsd")

        assert str(exc_info.value) == (
            "`stack` command is not found in your PATH. "
            "Make sure you have installed Stack. " + BASE_URL + "#freebsd"
        )

    @pytest.mark.asyncio
    async def test_subscribers_receive_same_error(self, empty_path_options: dict):
        runner = CountingRunner()
        errors: list[BaseException] = []
        proc = spawn_stack(["--version"], empty_path_options, platform="aix", runner=runner)
        subscription = proc.subscribe(on_error=errors.append)

        with pytest.raises(ExecutableNotFoundError) as exc_info:
            await proc

        assert errors == [exc_info.value]
        assert subscription.closed
        assert runner.started == []
        assert proc.pid is None


# =============================================================================
# Deferred result
# =============================================================================


class TestDeferredResult:
    """await spawn_stack(...)"""

    @pytest.mark.asyncio
    async def test_numeric_version(self, stack_options: dict):
        result = await spawn_stack(["--numeric-version"], stack_options)

        assert isinstance(result, StackResult)
        assert result.stdout == "1.7.1"
        assert result.stderr == ""
        assert result.exit_code == 0
        assert result.command == "stack --numeric-version"

    @pytest.mark.asyncio
    async def test_unknown_subcommand(self, stack_options: dict):
        with pytest.raises(CommandFailedError) as exc_info:
            await spawn_stack(["abcefgh", "--allow-different-user"], stack_options)

        error = exc_info.value
        assert str(error).split("\n")[0] == "Command failed: stack abcefgh --allow-different-user"
        assert error.exit_code == 1
        assert "Invalid argument `abcefgh'" in error.stderr
        assert error.signal_name is None

    @pytest.mark.asyncio
    async def test_failure_message_includes_stderr(self, stack_options: dict, workspace: Path):
        with pytest.raises(CommandFailedError) as exc_info:
            await spawn_stack(["--stack-yaml=none", "build"], with_cwd(stack_options, workspace))

        assert str((workspace / "none").resolve()) in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_failure_carries_both_channels(self, stack_options: dict):
        with pytest.raises(CommandFailedError) as exc_info:
            await spawn_stack(["exit", "2"], stack_options)

        error = exc_info.value
        assert error.exit_code == 2
        assert error.stdout == "partial output"
        assert error.stderr == "something went wrong"
        assert str(error).split("\n") == [
            "Command failed: stack exit 2",
            "something went wrong",
            "partial output",
        ]

    @pytest.mark.asyncio
    async def test_single_trailing_newline_trimmed(self, stack_options: dict):
        result = await spawn_stack(["chunks"], stack_options)
        assert result.stdout == "first\nsecond\r\nthird\nno-newline"

    @pytest.mark.asyncio
    async def test_many_awaiters_share_result(self, stack_options: dict):
        proc = spawn_stack(["--numeric-version"], stack_options)
        first, second = await asyncio.gather(proc, proc.wait())
        assert first is second
        assert await proc is first

    @pytest.mark.asyncio
    async def test_missing_cwd_is_spawn_error(self, stack_options: dict, tmp_path: Path):
        options = with_cwd(stack_options, tmp_path / "none" / "exists")
        with pytest.raises(ProcessSpawnError):
            await spawn_stack(["--version"], options)

    def test_requires_running_loop(self, stack_options: dict):
        with pytest.raises(RuntimeError):
            spawn_stack(["--version"], stack_options)


# =============================================================================
# Options
# =============================================================================


class TestOptions:
    """cwd / env / extend_env / input."""

    @pytest.mark.asyncio
    async def test_cwd(self, stack_options: dict, workspace: Path):
        result = await spawn_stack(["pwd"], with_cwd(stack_options, workspace))
        assert result.stdout == str(workspace.resolve())

    @pytest.mark.asyncio
    async def test_extend_env_keeps_parent(
        self, stack_options: dict, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("SPAWN_STACK_PARENT_VAR", "from-parent")
        result = await spawn_stack(["env", "SPAWN_STACK_PARENT_VAR"], stack_options)
        assert result.stdout == "from-parent"

    @pytest.mark.asyncio
    async def test_no_extend_env_replaces(
        self, stack_bin: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("SPAWN_STACK_PARENT_VAR", "from-parent")
        options = {
            "env": {"PATH": str(stack_bin), "CHILD_VAR": "from-options"},
            "extend_env": False,
        }

        assert (await spawn_stack(["env", "CHILD_VAR"], options)).stdout == "from-options"
        assert (await spawn_stack(["env", "SPAWN_STACK_PARENT_VAR"], options)).stdout == "<unset>"

    @pytest.mark.asyncio
    async def test_input(self, stack_options: dict):
        result = await spawn_stack(["cat"], {**stack_options, "input": "hello\nworld\n"})
        assert result.stdout == "hello\nworld"

    @pytest.mark.asyncio
    async def test_camel_case_extend_env(
        self, stack_bin: Path, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setenv("SPAWN_STACK_PARENT_VAR", "from-parent")
        options = {"env": {"PATH": str(stack_bin)}, "extendEnv": False}

        result = await spawn_stack(["env", "SPAWN_STACK_PARENT_VAR"], options)
        assert result.stdout == "<unset>"

    @pytest.mark.asyncio
    async def test_rejected_launch_keyword_is_spawn_error(self, stack_options: dict):
        errors: list[BaseException] = []
        proc = spawn_stack(["--numeric-version"], {**stack_options, "universal_newlines": True})
        proc.subscribe(on_error=errors.append)

        with pytest.raises(ProcessSpawnError) as exc_info:
            await proc

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert errors == [exc_info.value]
        assert proc.pid is None

    def test_unknown_launch_keyword_rejected_synchronously(self, stack_options: dict):
        with pytest.raises(ValueError, match="extend_environment"):
            spawn_stack(["--numeric-version"], {**stack_options, "extend_environment": False})


# =============================================================================
# Stream
# =============================================================================


class TestStream:
    """subscribe() and async iteration."""

    @pytest.mark.asyncio
    async def test_unpacked_lines(self, stack_options: dict, workspace: Path):
        pkgs = ["array-0.5.1.1", "time-1.8"]
        proc = spawn_stack(["unpack", *pkgs], with_cwd(stack_options, workspace))

        lines = [event.text async for event in proc if event.text.startswith("Unpacked ")]

        root = workspace.resolve()
        assert lines == [f"Unpacked {pkg} to {root / pkg}{os.sep}" for pkg in pkgs]

    @pytest.mark.asyncio
    async def test_stderr_lines_and_error(self, stack_options: dict):
        lines: list[str] = []
        errors: list[BaseException] = []
        proc = spawn_stack(["setup", "7.10.999", "--allow-different-user"], stack_options)
        proc.subscribe(
            on_next=lambda event: lines.append(event.text)
            if event.text.startswith("No setup information") else None,
            on_error=errors.append,
        )

        with pytest.raises(CommandFailedError) as exc_info:
            await proc

        assert lines == ["No setup information found for ghc-7.10.999 on your platform."]
        assert errors == [exc_info.value]
        assert str(errors[0]).split("\n")[0] == (
            "Command failed: stack setup 7.10.999 --allow-different-user"
        )

    @pytest.mark.asyncio
    async def test_iteration_raises_failure_after_lines(self, stack_options: dict):
        seen: list[LineEvent] = []
        with pytest.raises(CommandFailedError):
            async for event in spawn_stack(["exit", "1"], stack_options):
                seen.append(event)

        assert {(e.channel, e.text) for e in seen} == {
            (Channel.STDOUT, "partial output"),
            (Channel.STDERR, "something went wrong"),
        }

    @pytest.mark.asyncio
    async def test_chunked_output_and_final_partial_line(self, stack_options: dict):
        lines = [event.text async for event in spawn_stack(["chunks"], stack_options)]
        assert lines == ["first", "second", "third", "no-newline"]

    @pytest.mark.asyncio
    async def test_order_within_each_channel(self, stack_options: dict):
        events = [event async for event in spawn_stack(["both"], stack_options)]

        assert [e.text for e in events if e.channel is Channel.STDOUT] == ["out 1", "out 2", "out 3"]
        assert [e.text for e in events if e.channel is Channel.STDERR] == ["err 1", "err 2", "err 3"]

    @pytest.mark.asyncio
    async def test_completion_precedes_result(self, stack_options: dict):
        order: list[str] = []
        proc = spawn_stack(["--numeric-version"], stack_options)
        subscription = proc.subscribe(on_complete=lambda: order.append("stream"))

        await proc
        order.append("result")

        assert order == ["stream", "result"]
        assert subscription.closed

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_terminal_notice_only(self, stack_options: dict):
        proc = spawn_stack(["both"], stack_options)
        await proc

        events: list[LineEvent] = []
        completed: list[bool] = []
        subscription = proc.subscribe(events.append, on_complete=lambda: completed.append(True))

        assert events == []
        assert completed == [True]
        assert subscription.closed
        assert [e async for e in proc] == []

    @pytest.mark.asyncio
    async def test_late_subscriber_after_failure(self, stack_options: dict):
        proc = spawn_stack(["exit", "4"], stack_options)
        with pytest.raises(CommandFailedError) as exc_info:
            await proc

        errors: list[BaseException] = []
        proc.subscribe(on_error=errors.append)
        assert errors == [exc_info.value]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_others(self, stack_options: dict):
        loop = asyncio.get_running_loop()
        reported: list[dict] = []
        loop.set_exception_handler(lambda _loop, context: reported.append(context))

        def broken(event: LineEvent) -> None:
            raise RuntimeError("subscriber bug")

        try:
            proc = spawn_stack(["both"], stack_options)
            proc.subscribe(broken)
            good: list[LineEvent] = []
            proc.subscribe(good.append)

            result = await proc
        finally:
            loop.set_exception_handler(None)

        assert len(good) == 6
        assert result.stdout == "out 1\nout 2\nout 3"
        assert reported
        assert isinstance(reported[0]["exception"], RuntimeError)


# =============================================================================
# One process per invocation
# =============================================================================


class TestSingleProcess:
    """Every consumer observes the same process."""

    @pytest.mark.asyncio
    async def test_concurrent_consumers(self, stack_options: dict):
        runner = CountingRunner()
        proc = spawn_stack(["both"], stack_options, runner=runner)

        subscribed: list[LineEvent] = []
        proc.subscribe(subscribed.append)

        async def iterate() -> list[LineEvent]:
            return [event async for event in proc]

        iterated, result = await asyncio.gather(iterate(), proc.wait())

        assert len(runner.started) == 1
        assert subscribed == iterated
        stdout_lines = [e.text for e in subscribed if e.channel is Channel.STDOUT]
        assert "\n".join(stdout_lines) == result.stdout
        stderr_lines = [e.text for e in subscribed if e.channel is Channel.STDERR]
        assert "\n".join(stderr_lines) == result.stderr

    @pytest.mark.asyncio
    async def test_process_starts_without_consumers(self, stack_options: dict):
        runner = CountingRunner()
        proc = spawn_stack(["--numeric-version"], stack_options, runner=runner)

        await asyncio.sleep(0.5)

        assert len(runner.started) == 1
        assert (await proc).stdout == "1.7.1"
        assert len(runner.started) == 1


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    """Subscription cancel, explicit cancel and cancelled awaiters."""

    @pytest.mark.asyncio
    async def test_unsubscribe_is_synchronous_and_idempotent(self, stack_options: dict):
        runner = CountingRunner()
        proc = spawn_stack(["--no-allow-different-user", "--version"], stack_options, runner=runner)
        errors: list[BaseException] = []
        subscription = proc.subscribe(on_error=errors.append)

        closed_before = subscription.closed
        subscription.unsubscribe()
        closed_after = subscription.closed
        subscription.unsubscribe()

        assert [closed_before, closed_after] == [False, True]
        assert subscription.closed

        with pytest.raises(ProcessCancelledError):
            await proc
        assert errors == []
        assert runner.started == []

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_leaving_iteration_kills_process(self, stack_options: dict):
        proc = spawn_stack(["sleep", "30"], stack_options)

        async with contextlib.aclosing(proc.lines()) as lines:
            async for event in lines:
                if event.text == "sleeping":
                    break

        with pytest.raises(ProcessCancelledError) as exc_info:
            await proc

        assert proc.cancelled()
        assert proc.returncode is not None and proc.returncode < 0
        assert "sleeping" in exc_info.value.stdout
        assert "woke up" not in exc_info.value.stdout

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_explicit_cancel_notifies_remaining_subscribers(self, stack_options: dict):
        proc = spawn_stack(["sleep", "30"], stack_options)
        started = asyncio.Event()
        errors: list[BaseException] = []
        subscription = proc.subscribe(
            on_next=lambda event: started.set(),
            on_error=errors.append,
        )

        await started.wait()
        assert proc.cancel() is True
        assert proc.cancel() is False

        with pytest.raises(ProcessCancelledError) as exc_info:
            await proc

        assert errors == [exc_info.value]
        assert subscription.closed

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_no_events_after_cancel(self, stack_options: dict):
        proc = spawn_stack(["sleep", "30"], stack_options)
        events: list[LineEvent] = []
        first_line = asyncio.Event()

        def on_next(event: LineEvent) -> None:
            events.append(event)
            first_line.set()

        proc.subscribe(on_next, on_error=lambda error: None)
        await first_line.wait()
        proc.cancel()

        with pytest.raises(ProcessCancelledError):
            await proc
        assert [e.text for e in events] == ["sleeping"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timed_out_awaiter_kills_process(self, stack_options: dict):
        proc = spawn_stack(["sleep", "30"], stack_options)

        with pytest.raises(TimeoutError):
            with anyio.fail_after(0.5):
                await proc

        assert proc.cancelled()
        with pytest.raises(ProcessCancelledError):
            await proc

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_timed_out_awaiter_keeps_other_consumers(self, stack_options: dict):
        proc = spawn_stack(["sleep", "30"], stack_options)
        subscription = proc.subscribe(on_error=lambda error: None)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=0.3)

        assert not proc.cancelled()
        assert not proc.done()

        subscription.unsubscribe()
        assert proc.cancelled()
        with pytest.raises(ProcessCancelledError):
            await proc

    @pytest.mark.asyncio
    async def test_cancel_after_exit_is_noop(self, stack_options: dict):
        proc = spawn_stack(["--numeric-version"], stack_options)
        subscription = proc.subscribe()
        result = await proc

        assert proc.cancel() is False
        subscription.unsubscribe()
        assert not proc.cancelled()
        assert (await proc) is result
