"""spawn-stack type definitions.

Defines the wrapped tool description, spawn options, line events and the
buffered result of an invocation.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

__all__ = [
    "Channel",
    "InvocationRequest",
    "LineEvent",
    "RESERVED_OPTIONS",
    "STACK",
    "SpawnOptions",
    "StackResult",
    "ToolSpec",
    "strip_final_newline",
]


@dataclass(frozen=True)
class ToolSpec:
    """Description of the wrapped executable.

    Attributes:
        name: Executable name looked up on PATH
        display_name: Human readable product name used in diagnostics
        install_url: Installation documentation, platform anchors are appended
    """

    name: str
    display_name: str
    install_url: str


STACK = ToolSpec(
    name="stack",
    display_name="Stack",
    install_url="https://docs.haskellstack.org/en/stable/install_and_upgrade/",
)


class Channel(str, Enum):
    """Output channel of the subprocess."""

    STDOUT = "stdout"
    STDERR = "stderr"


class LineEvent(BaseModel):
    """One complete line of output, newline stripped.

    Attributes:
        channel: Channel the line was read from
        text: Line content without the trailing line terminator
        timestamp: Unix time (seconds) at which the line was completed
    """

    model_config = ConfigDict(frozen=True)

    channel: Channel
    text: str
    timestamp: float = Field(default_factory=time.time)

    def __str__(self) -> str:
        return self.text


# Options the launcher always controls itself
RESERVED_OPTIONS = frozenset({"stdin", "stdout", "stderr"})


class SpawnOptions(BaseModel):
    """Options of one invocation.

    Unknown keys are kept and passed through to
    ``asyncio.create_subprocess_exec``.

    Attributes:
        cwd: Working directory override
        env: Environment variables for the child
        extend_env: Merge ``env`` into the inherited environment (default) or
            use it as the complete environment; also accepted as ``extendEnv``
        input: Data written to stdin, stdin is /dev/null otherwise
        encoding: Encoding used to decode both output channels
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    cwd: str | Path | None = None
    env: dict[str, str] | None = None
    extend_env: bool = Field(
        default=True, validation_alias=AliasChoices("extend_env", "extendEnv")
    )
    input: str | bytes | None = None
    encoding: str = "utf-8"

    @property
    def passthrough(self) -> dict[str, Any]:
        """Extra keyword arguments for the process launch."""
        return dict(self.model_extra or {})

    def stdin_bytes(self) -> bytes | None:
        if self.input is None:
            return None
        if isinstance(self.input, str):
            return self.input.encode(self.encoding)
        return self.input


@dataclass(frozen=True)
class InvocationRequest:
    """A validated request to run the tool. Immutable once validated."""

    tool: ToolSpec
    args: tuple[str, ...]
    options: SpawnOptions

    @property
    def command(self) -> str:
        """Tool name and arguments joined by single spaces."""
        return " ".join((self.tool.name, *self.args))

    def effective_env(self) -> dict[str, str] | None:
        """Environment of the child process.

        Returns:
            None when the child simply inherits the parent environment
        """
        env = self.options.env
        if not self.options.extend_env:
            return dict(env or {})
        if env is None:
            return None
        return {**os.environ, **env}


@dataclass(frozen=True)
class StackResult:
    """Buffered output of a successful invocation.

    Attributes:
        stdout: Full standard output, one trailing line terminator removed
        stderr: Full standard error, one trailing line terminator removed
        exit_code: Process exit code (always 0 for a resolved result)
        command: Tool name and arguments joined by single spaces
    """

    stdout: str
    stderr: str
    exit_code: int
    command: str


def strip_final_newline(text: str) -> str:
    """Remove a single trailing ``\\n`` or ``\\r\\n``."""
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith("\n"):
        return text[:-1]
    return text
