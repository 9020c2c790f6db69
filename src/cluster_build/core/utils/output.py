"""
Output sinks for streaming build and command output.

Remote Exec, the Ephemeral Pod Runner and local subprocesses forward
output chunks to a sink as they arrive, instead of writing to a global
stream. Sinks are line-buffered where they render per line.
"""

import logging
from typing import List, Optional, Protocol

from rich.status import Status

from .rich_ui import render_output_line, start_status


class OutputSink(Protocol):
    """Receives output chunks as they are produced."""

    def write(self, chunk: str) -> None: ...


class _LineBuffer:
    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> List[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest else []


class LogSink:
    """Forwards complete output lines to a logger."""

    def __init__(
        self,
        logger: logging.Logger,
        level: int = logging.DEBUG,
        prefix: str = "",
    ):
        self.logger = logger
        self.level = level
        self.prefix = prefix
        self._buffer = _LineBuffer()

    def write(self, chunk: str) -> None:
        for line in self._buffer.feed(chunk):
            self._emit(line)

    def flush(self) -> None:
        for line in self._buffer.flush():
            self._emit(line)

    def _emit(self, line: str) -> None:
        if line.strip():
            self.logger.log(self.level, f"{self.prefix}{line.rstrip()}")


class StatusLineSink:
    """Shows the latest output line on a Rich status line."""

    def __init__(self, title: str, status: Optional[Status] = None):
        self.title = title
        self._status = status
        self._buffer = _LineBuffer()

    def write(self, chunk: str) -> None:
        for line in self._buffer.feed(chunk):
            if line.strip():
                self._update(line)

    def _update(self, line: str) -> None:
        if self._status is None:
            self._status = start_status(self.title)
        self._status.update(f"{self.title} {render_output_line(line)}")

    def close(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None


class CollectingSink:
    """Accumulates every chunk, optionally teeing to another sink."""

    def __init__(self, tee: Optional[OutputSink] = None):
        self.tee = tee
        self._chunks: List[str] = []

    def write(self, chunk: str) -> None:
        self._chunks.append(chunk)
        if self.tee is not None:
            self.tee.write(chunk)

    @property
    def text(self) -> str:
        return "".join(self._chunks)
