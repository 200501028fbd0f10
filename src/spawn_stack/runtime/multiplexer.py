"""Merge stdout and stderr into ordered line events.

Chunks arrive split at arbitrary byte boundaries. Each channel gets its own
incremental decoder and line buffer; complete lines are emitted as soon as
their newline arrives and a trailing partial line is flushed at EOF. The
full decoded text of each channel is kept for the buffered result.

Lines are strictly ordered within a channel. Interleaving between the two
channels follows chunk arrival and is not deterministic across runs.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable

from ..types import Channel, LineEvent

__all__ = ["LineSplitter", "StreamMultiplexer"]

logger = logging.getLogger(__name__)

# Read size per pipe
CHUNK_SIZE = 4096

LineCallback = Callable[[LineEvent], None]


class LineSplitter:
    """Incremental line splitter for one output channel."""

    def __init__(self, channel: Channel, encoding: str = "utf-8") -> None:
        self.channel = channel
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""
        self._chunks: list[str] = []

    @property
    def text(self) -> str:
        """Everything decoded so far, line terminators included."""
        return "".join(self._chunks)

    def feed(self, data: bytes) -> list[str]:
        """Decode ``data`` and return the lines it completed."""
        return self._split(self._decoder.decode(data))

    def close(self) -> list[str]:
        """Flush the decoder and return the final partial line, if any."""
        lines = self._split(self._decoder.decode(b"", final=True))
        if self._pending:
            lines.append(_strip_cr(self._pending))
            self._pending = ""
        return lines

    def _split(self, decoded: str) -> list[str]:
        if not decoded:
            return []
        self._chunks.append(decoded)

        *complete, self._pending = (self._pending + decoded).split("\n")
        return [_strip_cr(line) for line in complete]


class StreamMultiplexer:
    """Pump both pipes of a process, emitting line events on arrival.

    The pipes are never paused: everything read is buffered, and ``stop()``
    only silences the event callback while draining continues.
    """

    def __init__(self, on_line: LineCallback, *, encoding: str = "utf-8") -> None:
        self._on_line = on_line
        self._splitters = {
            Channel.STDOUT: LineSplitter(Channel.STDOUT, encoding),
            Channel.STDERR: LineSplitter(Channel.STDERR, encoding),
        }
        self._stopped = False

    @property
    def stdout_text(self) -> str:
        return self._splitters[Channel.STDOUT].text

    @property
    def stderr_text(self) -> str:
        return self._splitters[Channel.STDERR].text

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Stop emitting events. Buffering continues until EOF."""
        self._stopped = True

    async def run(
        self,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
    ) -> None:
        """Read both pipes concurrently until both reach EOF."""
        await asyncio.gather(
            self._pump(Channel.STDOUT, stdout),
            self._pump(Channel.STDERR, stderr),
        )

    async def _pump(self, channel: Channel, reader: asyncio.StreamReader | None) -> None:
        splitter = self._splitters[channel]
        if reader is not None:
            while True:
                chunk = await reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                self._emit(channel, splitter.feed(chunk))
        self._emit(channel, splitter.close())
        logger.debug(f"{channel.value} reached EOF ({len(splitter.text)} chars)")

    def _emit(self, channel: Channel, lines: list[str]) -> None:
        for line in lines:
            if self._stopped:
                return
            self._on_line(LineEvent(channel=channel, text=line))


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line
