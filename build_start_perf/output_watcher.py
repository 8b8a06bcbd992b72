"""
Readiness detection from dev server output.

Raw stdout/stderr chunks are split into lines by LineBuffer, pushed into a
LineChannel as OutputLine records, and scanned by OutputWatcher for the
readiness pattern under a deadline.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import sys
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, TextIO

from .config import TIMEOUTS
from .errors import ServerStartTimeout

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

PREFIX_COLORS = {
    STDOUT: "36",
    STDERR: "31",
}

ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|[\x1b\x9b][\[\]()#;?]*(?:\d{1,4}(?:[;:]\d{0,4})*)?[\dA-PR-TZcf-nq-uy=><~]"
)


def strip_ansi(text: str) -> str:
    return ANSI_RE.sub("", text)


def format_prefix(text: str, prefix: str = "Server", color: Optional[str] = None) -> str:
    if color:
        return f"\x1b[{color}m[{prefix}]\x1b[0m {text}\n"
    return f"[{prefix}] {text}\n"


@dataclass(frozen=True)
class OutputLine:
    source: str
    text: str
    timestamp: float = field(default_factory=time.perf_counter)


class LineBuffer:
    """Accumulates decoded chunks and hands back complete lines."""

    def __init__(self, encoding: str = "utf-8"):
        self.decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self.buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self.buffer += self.decoder.decode(chunk)
        lines = self.buffer.split("\n")
        self.buffer = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        tail = self.buffer + self.decoder.decode(b"", final=True)
        self.buffer = ""
        return [tail.rstrip("\r")] if tail else []


class LineChannel:
    """Push side for the supervisor, async iterator for the watcher."""

    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def put(self, line: OutputLine) -> None:
        if self.closed:
            return
        self._queue.put_nowait(line)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[OutputLine]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[OutputLine]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


def passthrough(line: OutputLine, stdout: Optional[TextIO] = None, stderr: Optional[TextIO] = None) -> None:
    """Echo a server line to the console with a colored [Server] prefix."""
    if not line.text.strip():
        return
    if line.source == STDERR:
        stream = stderr or sys.stderr
    else:
        stream = stdout or sys.stdout
    stream.write(format_prefix(line.text, color=PREFIX_COLORS.get(line.source)))
    stream.flush()


class OutputWatcher:
    def __init__(self, lines: LineChannel):
        self.lines = lines
        self.matched: Optional[OutputLine] = None

    async def await_pattern(self, pattern: str, timeout_ms: int = TIMEOUTS["server_start"]) -> OutputLine:
        """
        Wait for the first line containing pattern after ANSI stripping.

        Raises ServerStartTimeout once timeout_ms elapses without a match,
        even when the channel closed early.
        """
        try:
            return await asyncio.wait_for(self._scan(pattern), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            raise ServerStartTimeout(pattern, timeout_ms) from None

    async def _scan(self, pattern: str) -> OutputLine:
        async for line in self.lines:
            if pattern in strip_ansi(line.text):
                self.matched = line
                logger.info(f"Readiness line from {line.source}: {strip_ansi(line.text)}")
                return line
        logger.debug("Server output closed before readiness pattern appeared")
        # Nothing else can match; let the deadline decide.
        return await asyncio.get_running_loop().create_future()
