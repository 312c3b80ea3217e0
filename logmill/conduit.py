"""
LogMill Line Conduit

The single shared channel between the line producers (tailer or one-shot
reader) and the program loader. It is unbounded, so producers never block,
and it carries an end-of-input marker once closed.

Key invariants:
  • close() succeeds exactly once; a second call raises ConduitClosedError
  • put() after close raises ConduitClosedError
  • every line put before close is delivered before end-of-input
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from .errors import ConduitClosedError

log = logging.getLogger("logmill.conduit")

# End-of-input marker. Lines are always str, so a private object cannot
# collide with data.
_EOF = object()


class LineConduit:
    """Unbounded FIFO of raw text lines with close-once semantics."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self.lines_put = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, line: str) -> None:
        if self._closed:
            raise ConduitClosedError("put on closed line conduit")
        self._queue.put_nowait(line)
        self.lines_put += 1

    def close(self) -> None:
        if self._closed:
            raise ConduitClosedError("line conduit closed twice")
        self._closed = True
        self._queue.put_nowait(_EOF)
        log.debug(f"> CONDUIT: Closed after {self.lines_put} line(s).")

    async def get(self) -> str | None:
        """Return the next line, or None once end-of-input is reached."""
        item = await self._queue.get()
        if item is _EOF:
            # Leave the marker in place so repeated reads keep seeing EOF.
            self._queue.put_nowait(_EOF)
            return None
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            line = await self.get()
            if line is None:
                return
            yield line
