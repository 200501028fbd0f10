"""Runtime module for subprocess management and output multiplexing.

This module provides isolated process execution with reliable termination
and the line splitting that feeds both consumption protocols.
"""

from __future__ import annotations

from .multiplexer import LineSplitter, StreamMultiplexer
from .process_runner import ProcessHandle, ProcessRunner, ProcessSpec

__all__ = [
    "LineSplitter",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "StreamMultiplexer",
]
