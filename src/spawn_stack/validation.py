"""Call-site argument validation.

Runs synchronously inside ``spawn_stack()``; nothing is scheduled or spawned
when validation fails.
"""

from __future__ import annotations

import inspect
import subprocess
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from .errors import ArityError
from .types import RESERVED_OPTIONS, InvocationRequest, SpawnOptions, ToolSpec

__all__ = ["validate_arguments"]

# Sequences that are really a single value
_SCALAR_SEQUENCES = (str, bytes, bytearray, memoryview)

# Keywords accepted by asyncio.create_subprocess_exec besides the argv
_LAUNCH_KEYWORDS = (
    frozenset(inspect.signature(subprocess.Popen).parameters) - {"args"}
) | {"limit"}


def validate_arguments(args: tuple[Any, ...], *, tool: ToolSpec) -> InvocationRequest:
    """Validate the positional arguments of a ``spawn_stack()`` call.

    Args:
        args: Positional arguments exactly as received
        tool: Wrapped tool, used in messages

    Returns:
        Immutable invocation request

    Raises:
        ArityError: Not 1 or 2 positional arguments
        TypeError: Non-sequence arguments, non-string items or bad options
        ValueError: Reserved option keys or unknown launch keywords
    """
    count = len(args)
    if count not in (1, 2):
        observed = "no" if count == 0 else str(count)
        raise ArityError(
            "Expected 1 or 2 arguments (<Sequence[str]>[, <Mapping>]), "
            f"but got {observed} arguments."
        )

    command_args = args[0]
    if isinstance(command_args, _SCALAR_SEQUENCES) or not isinstance(command_args, Sequence):
        raise TypeError(
            f"Expected arguments of `{tool.name}` command (Sequence[str]), "
            f"but got a non-sequence value {command_args!r}."
        )
    for index, item in enumerate(command_args):
        if not isinstance(item, str):
            raise TypeError(
                f"Expected every argument of `{tool.name}` command to be a string, "
                f"but got {item!r} at index {index}."
            )

    raw_options = args[1] if count == 2 else None
    return InvocationRequest(
        tool=tool,
        args=tuple(command_args),
        options=_validate_options(raw_options, tool),
    )


def _validate_options(raw: Any, tool: ToolSpec) -> SpawnOptions:
    if raw is None:
        return SpawnOptions()
    if not isinstance(raw, Mapping):
        raise TypeError(
            f"Expected options of `{tool.name}` command to be a mapping, but got {raw!r}."
        )

    reserved = sorted(RESERVED_OPTIONS.intersection(raw))
    if reserved:
        raise ValueError(
            f"Options {', '.join(reserved)} of `{tool.name}` command cannot be overridden."
        )

    try:
        options = SpawnOptions.model_validate(dict(raw))
    except ValidationError as e:
        raise TypeError(f"Invalid options of `{tool.name}` command: {e}") from e

    unknown = sorted(set(options.passthrough) - _LAUNCH_KEYWORDS)
    if unknown:
        raise ValueError(
            f"Unknown options {', '.join(unknown)} of `{tool.name}` command."
        )
    return options
