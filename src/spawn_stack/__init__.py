"""spawn-stack - run Haskell's `stack` as an awaitable and a line stream.

Usage:
    from spawn_stack import spawn_stack

    result = await spawn_stack(["--numeric-version"])
    print(result.stdout)

    async for event in spawn_stack(["unpack", "time-1.8"]):
        print(event.text)

Environment variables:
    SPAWN_STACK_TERM_TIMEOUT: grace period after SIGTERM (default 2.0)
    SPAWN_STACK_KILL_TIMEOUT: wait after SIGKILL (default 1.0)
    SPAWN_STACK_LOG_DEBUG: debug logging to a temp file (default false)
    SPAWN_STACK_LOG_LEVEL: level of the ``spawn_stack`` logger (default WARNING)
"""

__version__ = "0.1.0"

from .controller import StackProcess, spawn_stack
from .errors import (
    ArityError,
    CommandFailedError,
    ExecutableNotFoundError,
    ProcessCancelledError,
    ProcessSpawnError,
    SpawnStackError,
)
from .locator import platform_help_url
from .log import setup_logging
from .subscription import Subscription
from .types import STACK, Channel, LineEvent, SpawnOptions, StackResult, ToolSpec

__all__ = [
    "__version__",
    # Entry point
    "spawn_stack",
    "StackProcess",
    "Subscription",
    # Types
    "Channel",
    "LineEvent",
    "SpawnOptions",
    "StackResult",
    "ToolSpec",
    "STACK",
    # Errors
    "ArityError",
    "CommandFailedError",
    "ExecutableNotFoundError",
    "ProcessCancelledError",
    "ProcessSpawnError",
    "SpawnStackError",
    # Helpers
    "platform_help_url",
    "setup_logging",
]
