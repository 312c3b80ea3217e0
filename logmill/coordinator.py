"""
LogMill Coordinator

Wires the tailer, the program loader and the exporter into one process and
owns its lifecycle.

Startup validates the configuration, loads programs and then runs one of
two modes:
  ONE_SHOT  read every input file to the end, dump the final metrics as
            indented JSON to stdout, flush the push sink and exit
  DAEMON    tail the inputs, serve HTTP and block until SIGINT, SIGTERM
            or POST /quitquitquit

Shutdown state machine:
  RUNNING → SHUTTING_DOWN → CLOSED

Every shutdown trigger funnels into close(). The first caller starts the
single teardown task; every caller (concurrent or later) awaits that same
task, so the teardown body runs exactly once:
  1. stop the tailer, which closes the line conduit after its last flush,
     or close the conduit directly when no tailer was started
  2. wait, without a timeout, for every VM to observe end-of-input
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from enum import Enum
from typing import TextIO

import sdnotify

from .conduit import LineConduit
from .config import DaemonConfig
from .errors import CollaboratorError, OneShotError, SerializationError, ServeError
from .exporter import Exporter
from .http_server import HTTPServer, create_app
from .loader import Loader
from .store import MetricsStore
from .tailer import Tailer

log = logging.getLogger("logmill.coordinator")

# Give the VMs a chance to drain while a large one-shot file is being read.
ONE_SHOT_YIELD_EVERY = 1024

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Mode(str, Enum):
    ONE_SHOT = "one_shot"
    DAEMON = "daemon"


class ShutdownState(str, Enum):
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    CLOSED = "CLOSED"


class Coordinator:
    """Runtime coordinator for one LogMill process."""

    def __init__(
        self,
        config: DaemonConfig,
        store: MetricsStore | None = None,
        output: TextIO | None = None,
    ) -> None:
        self.config = config
        self.lines = LineConduit()
        self.store = store if store is not None else MetricsStore()
        self.state = ShutdownState.RUNNING

        self.tailer: Tailer | None = None
        self.loader: Loader | None = None
        self.exporter: Exporter | None = None
        self.http: HTTPServer | None = None

        self._output = output
        self._webquit = asyncio.Event()
        self._signalled = asyncio.Event()
        self._close_task: asyncio.Future[None] | None = None
        self._sd = sdnotify.SystemdNotifier()

    @property
    def mode(self) -> Mode:
        return Mode.ONE_SHOT if self.config.one_shot else Mode.DAEMON

    def _sd_notify(self, message: str) -> None:
        """Send a notification to systemd via the sd_notify protocol."""
        try:
            self._sd.notify(message)
        except OSError as exc:
            log.debug(f"> SYSTEM: sd_notify failed (not under systemd?): {exc}")

    # ── Startup ───────────────────────────────────────────────────────────────

    async def run(self) -> int:
        """
        Validate the configuration, load programs and run the selected mode.

        Returns the process exit status: the compile error count in
        compile-only/dump-bytecode mode, 0 otherwise. Fatal conditions raise.
        """
        pathnames = self.config.validate()
        errors = self.init_loader(self.config.progs)
        if self.config.compile_only or self.config.dump_bytecode:
            log.info(f"> SYSTEM: Compile only, {errors} program(s) failed.")
            return errors

        self.exporter = Exporter(
            self.store,
            push_url=self.config.push_url,
            push_interval=self.config.push_interval,
        )
        self.loader.start()

        log.info(f"> SYSTEM: Starting in {self.mode.value} mode with {len(pathnames)} input(s).")
        if self.mode is Mode.ONE_SHOT:
            return await self.run_one_shot(pathnames)
        return await self.serve(pathnames)

    def init_loader(self, path: str) -> int:
        try:
            self.loader = Loader(
                store=self.store,
                lines=self.lines,
                compile_only=self.config.compile_only,
                dump_bytecode=self.config.dump_bytecode,
                syslog_use_current_year=self.config.syslog_use_current_year,
                output=self._output,
            )
        except Exception as exc:
            raise CollaboratorError("Couldn't create a program loader.") from exc
        return self.loader.load_programs(path)

    def start_tailing(self, pathnames: list[str]) -> None:
        try:
            self.tailer = Tailer(lines=self.lines, poll_interval=self.config.poll_interval)
        except Exception as exc:
            raise CollaboratorError("Couldn't create a log tailer.") from exc
        for pathname in pathnames:
            self.tailer.tail(pathname)

    # ── One-shot mode ─────────────────────────────────────────────────────────

    async def one_shot(self, logfile: str) -> int:
        """Push every line of `logfile` onto the conduit, in order."""
        try:
            handle = open(logfile, encoding="utf-8", errors="replace")
        except OSError as exc:
            raise OneShotError(logfile, "failed to open log file") from exc

        count = 0
        with handle:
            while True:
                try:
                    line = handle.readline()
                except OSError as exc:
                    raise OneShotError(logfile, "failed to read from") from exc
                if not line:
                    break
                self.lines.put(line[:-1] if line.endswith("\n") else line)
                count += 1
                if count % ONE_SHOT_YIELD_EVERY == 0:
                    await asyncio.sleep(0)
        log.info(f"> ONE-SHOT: Read {count} line(s) from {logfile}")
        return count

    async def run_one_shot(self, pathnames: list[str]) -> int:
        for pathname in pathnames:
            await self.one_shot(pathname)
        await self.close()

        out = self._output or sys.stdout
        try:
            dump = json.dumps(self.store.snapshot(), indent=2, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Failed to marshal metrics into json: {exc}") from exc
        out.write(dump + "\n")
        out.flush()

        await self.exporter.write_metrics()
        return 0

    # ── Daemon mode ───────────────────────────────────────────────────────────

    async def serve(self, pathnames: list[str]) -> int:
        self._register_signals()
        self.start_tailing(pathnames)

        app = create_app(self.request_quit, self.exporter)
        self.exporter.start_metric_push()
        self.http = HTTPServer(app, self.config.host, self.config.port)
        self.http.start()

        self._sd_notify("READY=1")
        self._sd_notify("STATUS=Serving")

        listener_failed = await self.shutdown_handler()

        await self.exporter.stop_metric_push()
        if listener_failed:
            raise ServeError(f"HTTP listener on port {self.config.port} exited unexpectedly")
        await self.http.stop()
        log.info("> SYSTEM: Clean exit.")
        return 0

    def _register_signals(self) -> None:
        """Route SIGINT/SIGTERM to the shutdown wait."""
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler.
                signal.signal(
                    sig, lambda s, _frame: loop.call_soon_threadsafe(self._handle_signal, s)
                )
        log.info("> SYSTEM: Signal handlers registered.")

    def _handle_signal(self, sig: int) -> None:
        if self._signalled.is_set():
            return
        log.info(f"> SHUTDOWN: Received {signal.Signals(sig).name}, exiting...")
        self._signalled.set()

    def request_quit(self) -> None:
        """Fire the web-quit signal. Repeated calls are no-ops."""
        if self._webquit.is_set():
            return
        log.info("> SHUTDOWN: Received Quit from UI, exiting...")
        self._webquit.set()

    async def shutdown_handler(self) -> bool:
        """
        Block until a signal or a quit request arrives, then close.

        Returns True if the HTTP listener died first instead.
        """
        waiters = [
            asyncio.create_task(self._signalled.wait(), name="wait:signal"),
            asyncio.create_task(self._webquit.wait(), name="wait:webquit"),
        ]
        watched = list(waiters)
        if self.http is not None and self.http.task is not None:
            watched.append(self.http.task)

        done, _ = await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)
        for waiter in waiters:
            waiter.cancel()

        listener_failed = not any(waiter in done for waiter in waiters)
        if listener_failed:
            log.error("> SHUTDOWN: HTTP listener exited, shutting down.")
        await self.close()
        return listener_failed

    # ── Shutdown ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Run the teardown sequence once, however many times it is requested."""
        if self._close_task is None:
            self.state = ShutdownState.SHUTTING_DOWN
            self._close_task = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._close_task)

    async def _teardown(self) -> None:
        log.info("> SHUTDOWN: Shutdown requested.")
        self._sd_notify("STOPPING=1")
        if self.tailer is not None:
            await self.tailer.close()
        else:
            log.info("> SHUTDOWN: Closing lines.")
            self.lines.close()
        if self.loader is not None:
            await self.loader.wait_done()
        self.state = ShutdownState.CLOSED
        log.info("> SHUTDOWN: All programs done.")
