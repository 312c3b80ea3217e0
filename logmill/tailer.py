"""
LogMill Log Tailer

Watches log files and feeds every new complete line into the shared line
conduit. One polling task runs per watched path.

Behaviour per path:
  • a file present when tailing starts is read from its current end
  • a file created later (or re-created after rotation) is read from the start
  • truncation rewinds to the start of the file
  • a trailing partial line is held back until its newline arrives, and is
    flushed when the tailer stops

Failures (missing files, permission errors) are logged, never returned to
the caller. close() is the only place the conduit is closed on the daemon
path, and it happens after every tail task has flushed its last read.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO

from .conduit import LineConduit

log = logging.getLogger("logmill.tailer")


@dataclass
class _TailState:
    path: str
    handle: BinaryIO | None = None
    inode: int = 0
    partial: bytes = b""
    reported_missing: bool = False

    def close(self) -> None:
        if self.handle is not None:
            self.handle.close()
            self.handle = None


class Tailer:
    """Tails a set of files into a LineConduit."""

    def __init__(self, lines: LineConduit, poll_interval: float = 0.25) -> None:
        self.lines = lines
        self.poll_interval = poll_interval
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._stop = asyncio.Event()
        self._closed = False

    @property
    def watched(self) -> list[str]:
        return sorted(self._tasks)

    def tail(self, pathname: str) -> None:
        """Begin watching `pathname`. Glob patterns are expanded now."""
        if self._closed:
            log.warning(f"> TAILER: Ignoring tail({pathname!r}) after close.")
            return

        if glob.has_magic(pathname):
            matches = sorted(glob.glob(pathname))
            if not matches:
                log.warning(f"> TAILER: No files match {pathname!r}.")
            paths = matches
        else:
            paths = [pathname]

        for path in paths:
            path = os.path.abspath(path)
            if path in self._tasks:
                continue
            self._tasks[path] = asyncio.create_task(self._tail_file(path), name=f"tail:{path}")
            log.info(f"> TAILER: Tailing {path}")

    async def close(self) -> None:
        """Stop every watch, flush in-flight lines, then close the conduit."""
        if self._closed:
            return
        self._closed = True
        log.info(f"> TAILER: Stopping {len(self._tasks)} watch(es).")
        self._stop.set()
        if self._tasks:
            await asyncio.gather(*self._tasks.values())
        log.info("> TAILER: Closing lines.")
        self.lines.close()

    # ── Per-file polling ──────────────────────────────────────────────────────

    async def _tail_file(self, path: str) -> None:
        state = _TailState(path)
        first = True
        try:
            while True:
                stopping = self._stop.is_set()
                try:
                    self._poll(state, seek_to_end=first)
                except OSError as exc:
                    log.warning(f"> TAILER: Error reading {path}: {exc}")
                    state.close()
                first = False
                if stopping:
                    break
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if state.partial:
                self._emit(state.partial)
                state.partial = b""
            state.close()

    def _open(self, state: _TailState, seek_to_end: bool) -> bool:
        try:
            handle = open(state.path, "rb")
        except FileNotFoundError:
            if not state.reported_missing:
                log.info(f"> TAILER: {state.path} does not exist yet, waiting.")
                state.reported_missing = True
            return False
        state.handle = handle
        state.inode = os.fstat(handle.fileno()).st_ino
        state.reported_missing = False
        if seek_to_end:
            handle.seek(0, os.SEEK_END)
        return True

    def _poll(self, state: _TailState, seek_to_end: bool) -> None:
        if state.handle is None:
            if not self._open(state, seek_to_end):
                return

        # Truncated in place.
        if os.fstat(state.handle.fileno()).st_size < state.handle.tell():
            log.info(f"> TAILER: {state.path} truncated, rewinding.")
            state.handle.seek(0)
            state.partial = b""

        self._read(state)

        # Rotated: drain the old handle above, then follow the new file.
        try:
            inode = os.stat(state.path).st_ino
        except FileNotFoundError:
            return
        if inode != state.inode:
            log.info(f"> TAILER: {state.path} rotated, reopening.")
            if state.partial:
                self._emit(state.partial)
                state.partial = b""
            state.close()
            if self._open(state, seek_to_end=False):
                self._read(state)

    def _read(self, state: _TailState) -> None:
        data = state.handle.read()
        if not data:
            return
        chunks = (state.partial + data).split(b"\n")
        state.partial = chunks.pop()
        for chunk in chunks:
            self._emit(chunk)

    def _emit(self, raw: bytes) -> None:
        self.lines.put(raw.decode("utf-8", errors="replace"))
