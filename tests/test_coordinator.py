"""
Tests for the coordinator: mode selection, the one-shot path and the
exactly-once shutdown sequence.
"""

from __future__ import annotations

import asyncio
import io
import json
import math
import os
import signal
from unittest.mock import AsyncMock, call, patch

import httpx
import pytest

from logmill.config import DaemonConfig
from logmill.coordinator import Coordinator, Mode, ShutdownState
from logmill.errors import ConfigError, OneShotError, SerializationError, ServeError
from logmill.exporter import Exporter
from logmill.http_server import create_app
from logmill.store import Metric, MetricKind, MetricsStore


class FakeTailer:
    """Stands in for Tailer: closes the conduit once, on the first close()."""

    def __init__(self, lines) -> None:
        self.lines = lines
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        await asyncio.sleep(0)
        self.lines.close()


class FakeHTTPServer:
    """Stands in for HTTPServer without binding a socket."""

    instances: list["FakeHTTPServer"] = []

    def __init__(self, app, host, port, fail: bool = False) -> None:
        self.app = app
        self.fail = fail
        self.stopped = asyncio.Event()
        self.task = None
        FakeHTTPServer.instances.append(self)

    async def _serve(self) -> None:
        if not self.fail:
            await self.stopped.wait()

    def start(self):
        self.task = asyncio.create_task(self._serve())
        return self.task

    async def stop(self) -> None:
        self.stopped.set()
        await self.task


def _lines_total(coordinator: Coordinator) -> float:
    return coordinator.store.find("lines_total", "lines.mtail").get_datum().value


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


# ── Startup ───────────────────────────────────────────────────────────────────


class TestStartup:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "config, message",
        [
            (DaemonConfig(logs="a.log"), "No program directory"),
            (DaemonConfig(progs="/progs"), "No logs specified"),
            (DaemonConfig(progs="/progs", logs=",,"), "No logs to tail"),
        ],
    )
    async def test_config_errors_stop_before_listener(self, config, message):
        with patch("logmill.coordinator.HTTPServer") as server_cls:
            with pytest.raises(ConfigError, match=message):
                await Coordinator(config).run()
        server_cls.assert_not_called()

    def test_mode_selection(self):
        assert Coordinator(DaemonConfig(one_shot=True)).mode is Mode.ONE_SHOT
        assert Coordinator(DaemonConfig()).mode is Mode.DAEMON

    @pytest.mark.asyncio
    async def test_compile_only_returns_error_count(self, progs_dir, write_log):
        (progs_dir / "broken.mtail").write_text("counter x /(/\n")
        config = DaemonConfig(
            logs=str(write_log("a.log", [])), progs=str(progs_dir), compile_only=True
        )

        with patch("logmill.coordinator.HTTPServer") as server_cls:
            assert await Coordinator(config).run() == 1
        server_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_dump_bytecode_prints_and_exits(self, progs_dir, write_log):
        out = io.StringIO()
        config = DaemonConfig(
            logs=str(write_log("a.log", [])), progs=str(progs_dir), dump_bytecode=True
        )

        assert await Coordinator(config, output=out).run() == 0
        assert "Prog: lines.mtail" in out.getvalue()


# ── One-shot ──────────────────────────────────────────────────────────────────


class TestOneShot:
    @pytest.mark.asyncio
    async def test_reads_files_in_order_and_dumps_json(self, progs_dir, write_log):
        a = write_log("a.log", ["a1", "a2 status=500", "a3"])
        b = write_log("b.log", ["b1", "b2"])
        out = io.StringIO()
        config = DaemonConfig(logs=f"{a},{b}", progs=str(progs_dir), one_shot=True)
        coordinator = Coordinator(config, output=out)

        with patch.object(coordinator.lines, "put", wraps=coordinator.lines.put) as put:
            assert await coordinator.run() == 0

        assert put.call_args_list == [
            call(line) for line in ("a1", "a2 status=500", "a3", "b1", "b2")
        ]
        dump = out.getvalue()
        assert dump.startswith("{\n  ")
        metrics = json.loads(dump)
        assert metrics["lines_total"][0]["values"][0]["value"] == 5
        assert metrics["errors_total"][0]["values"][0]["labels"] == {"code": "500"}
        assert coordinator.state is ShutdownState.CLOSED
        assert coordinator.lines.closed

    @pytest.mark.asyncio
    async def test_final_export_flush(self, progs_dir, write_log):
        log_path = write_log("a.log", ["x"])
        config = DaemonConfig(logs=str(log_path), progs=str(progs_dir), one_shot=True)

        with patch.object(Exporter, "write_metrics", new_callable=AsyncMock) as flush:
            await Coordinator(config, output=io.StringIO()).run()

        flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_finite_snapshot_is_a_serialization_error(self, progs_dir, write_log):
        store = MetricsStore()
        store.add(Metric("ratio", "manual.mtail", MetricKind.GAUGE)).get_datum().set(math.nan)
        out = io.StringIO()
        config = DaemonConfig(
            logs=str(write_log("a.log", ["x"])), progs=str(progs_dir), one_shot=True
        )

        with pytest.raises(SerializationError):
            await Coordinator(config, store=store, output=out).run()

        assert out.getvalue() == ""

    @pytest.mark.asyncio
    async def test_last_line_without_newline_is_delivered(self, progs_dir, tmp_path):
        log_path = tmp_path / "a.log"
        log_path.write_text("first\nsecond")
        config = DaemonConfig(logs=str(log_path), progs=str(progs_dir), one_shot=True)
        coordinator = Coordinator(config, output=io.StringIO())

        await coordinator.run()

        assert _lines_total(coordinator) == 2

    @pytest.mark.asyncio
    async def test_missing_file_aborts_batch(self, progs_dir, write_log, tmp_path):
        missing = tmp_path / "missing.log"
        later = write_log("b.log", ["never read"])
        config = DaemonConfig(logs=f"{missing},{later}", progs=str(progs_dir), one_shot=True)
        coordinator = Coordinator(config, output=io.StringIO())

        with pytest.raises(OneShotError) as excinfo:
            await coordinator.run()

        assert excinfo.value.path == str(missing)
        assert "failed to open log file" in str(excinfo.value)
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)
        assert coordinator.lines.lines_put == 0

    @pytest.mark.asyncio
    async def test_read_failure_aborts_batch(self, progs_dir):
        class BrokenHandle:
            def __init__(self) -> None:
                self.reads = 0

            def __enter__(self):
                return self

            def __exit__(self, *exc) -> None:
                pass

            def readline(self) -> str:
                self.reads += 1
                if self.reads > 1:
                    raise OSError("disk on fire")
                return "ok\n"

        config = DaemonConfig(logs="a.log,b.log", progs=str(progs_dir), one_shot=True)
        coordinator = Coordinator(config, output=io.StringIO())

        with patch("logmill.coordinator.open", create=True, return_value=BrokenHandle()) as opener:
            with pytest.raises(OneShotError, match="failed to read from 'a.log'"):
                await coordinator.run()

        opener.assert_called_once()
        assert coordinator.lines.lines_put == 1

    @pytest.mark.asyncio
    async def test_completion_only_after_close(self, progs_dir, write_log):
        config = DaemonConfig(
            logs=str(write_log("a.log", ["1", "2", "3"])), progs=str(progs_dir), one_shot=True
        )
        coordinator = Coordinator(config)
        coordinator.init_loader(config.progs)
        coordinator.loader.start()

        assert await coordinator.one_shot(config.logs) == 3
        await asyncio.sleep(0.05)
        assert not coordinator.loader.vms_done.is_set()
        assert not coordinator.lines.closed

        await coordinator.close()

        assert coordinator.lines.closed
        assert coordinator.loader.vms_done.is_set()
        assert _lines_total(coordinator) == 3


# ── Shutdown ──────────────────────────────────────────────────────────────────


class TestShutdown:
    @pytest.mark.asyncio
    async def test_closes_conduit_directly_without_tailer(self):
        coordinator = Coordinator(DaemonConfig())

        await coordinator.close()

        assert coordinator.lines.closed
        assert coordinator.state is ShutdownState.CLOSED

    @pytest.mark.asyncio
    async def test_tailer_closes_conduit_when_present(self):
        coordinator = Coordinator(DaemonConfig())
        coordinator.tailer = FakeTailer(coordinator.lines)

        await coordinator.close()
        await coordinator.close()

        assert coordinator.tailer.close_calls == 1
        assert coordinator.lines.closed

    @pytest.mark.asyncio
    async def test_concurrent_close_runs_teardown_once(self):
        coordinator = Coordinator(DaemonConfig())
        coordinator.tailer = FakeTailer(coordinator.lines)

        with patch.object(coordinator, "_teardown", wraps=coordinator._teardown) as teardown:
            await asyncio.gather(*(coordinator.close() for _ in range(10)))

        assert teardown.call_count == 1
        assert coordinator.tailer.close_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signals, quits", [(1, 0), (0, 1), (3, 2), (2, 5)])
    async def test_signals_and_quits_tear_down_once(self, signals, quits):
        coordinator = Coordinator(DaemonConfig())
        coordinator.tailer = FakeTailer(coordinator.lines)

        with patch.object(coordinator, "_teardown", wraps=coordinator._teardown) as teardown:
            handler = asyncio.create_task(coordinator.shutdown_handler())
            await asyncio.sleep(0)
            for _ in range(signals):
                coordinator._handle_signal(signal.SIGTERM)
            for _ in range(quits):
                coordinator.request_quit()
            await handler
            # Late triggers after teardown are no-ops.
            coordinator._handle_signal(signal.SIGINT)
            coordinator.request_quit()
            await coordinator.close()

        assert teardown.call_count == 1
        assert coordinator.tailer.close_calls == 1
        assert coordinator.state is ShutdownState.CLOSED

    @pytest.mark.asyncio
    async def test_concurrent_http_quits_shut_down_once(self):
        coordinator = Coordinator(DaemonConfig())
        coordinator.tailer = FakeTailer(coordinator.lines)
        app = create_app(coordinator.request_quit)
        transport = httpx.ASGITransport(app=app)

        with patch.object(coordinator, "_teardown", wraps=coordinator._teardown) as teardown:
            handler = asyncio.create_task(coordinator.shutdown_handler())
            async with httpx.AsyncClient(transport=transport, base_url="http://logmill") as client:
                responses = await asyncio.gather(
                    *(client.post("/quitquitquit") for _ in range(8))
                )
            await handler

        assert [r.status_code for r in responses] == [200] * 8
        assert all(r.text == "Exiting..." for r in responses)
        assert teardown.call_count == 1
        assert coordinator.tailer.close_calls == 1

    @pytest.mark.asyncio
    async def test_rejected_quit_leaves_signal_unfired(self):
        coordinator = Coordinator(DaemonConfig())
        app = create_app(coordinator.request_quit)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://logmill"
        ) as client:
            response = await client.get("/quitquitquit")

        assert response.status_code == 405
        assert not coordinator._webquit.is_set()
        assert coordinator.state is ShutdownState.RUNNING

    @pytest.mark.asyncio
    async def test_sigterm_drains_tailed_lines(self, progs_dir, write_log):
        log_path = write_log("app.log", [])
        config = DaemonConfig(logs=str(log_path), progs=str(progs_dir), poll_interval=0.01)
        coordinator = Coordinator(config)
        coordinator.init_loader(config.progs)
        coordinator.loader.start()
        coordinator.start_tailing(config.pathnames)

        handler = asyncio.create_task(coordinator.shutdown_handler())
        await asyncio.sleep(0.05)
        with log_path.open("a") as f:
            f.write("one\ntwo status=503\n")
        await _wait_for(lambda: coordinator.lines.lines_put == 2)

        coordinator._handle_signal(signal.SIGTERM)
        await handler

        assert coordinator.loader.vms_done.is_set()
        assert _lines_total(coordinator) == 2

        with log_path.open("a") as f:
            f.write("three\n")
        await asyncio.sleep(0.05)
        assert _lines_total(coordinator) == 2


# ── Daemon mode ───────────────────────────────────────────────────────────────


class TestDaemon:
    @pytest.mark.asyncio
    async def test_serves_until_quit(self, progs_dir, write_log):
        FakeHTTPServer.instances.clear()
        config = DaemonConfig(
            logs=str(write_log("app.log", [])), progs=str(progs_dir), poll_interval=0.01
        )
        coordinator = Coordinator(config)

        with patch("logmill.coordinator.HTTPServer", FakeHTTPServer):
            run = asyncio.create_task(coordinator.run())
            await _wait_for(lambda: coordinator.http is not None)
            coordinator.request_quit()
            assert await run == 0

        server = FakeHTTPServer.instances[0]
        assert server.stopped.is_set()
        assert coordinator.tailer is not None
        assert coordinator.state is ShutdownState.CLOSED

    @pytest.mark.asyncio
    async def test_listener_failure_is_fatal(self, progs_dir, write_log):
        config = DaemonConfig(
            logs=str(write_log("app.log", [])), progs=str(progs_dir), poll_interval=0.01
        )
        coordinator = Coordinator(config)

        def failing_server(app, host, port):
            return FakeHTTPServer(app, host, port, fail=True)

        with patch("logmill.coordinator.HTTPServer", failing_server):
            with pytest.raises(ServeError):
                await coordinator.run()

        assert coordinator.state is ShutdownState.CLOSED
        assert coordinator.lines.closed

    @pytest.mark.asyncio
    async def test_sigterm_to_process_shuts_down_once(self, progs_dir, write_log):
        config = DaemonConfig(
            logs=str(write_log("app.log", [])), progs=str(progs_dir), poll_interval=0.01
        )
        coordinator = Coordinator(config)

        with patch("logmill.coordinator.HTTPServer", FakeHTTPServer), patch.object(
            coordinator, "_teardown", wraps=coordinator._teardown
        ) as teardown:
            run = asyncio.create_task(coordinator.run())
            await _wait_for(lambda: coordinator.http is not None)

            os.kill(os.getpid(), signal.SIGTERM)
            assert await asyncio.wait_for(run, timeout=5) == 0

            # A second signal only re-sets the already-fired event.
            os.kill(os.getpid(), signal.SIGTERM)
            await asyncio.sleep(0.05)
            await coordinator.close()

        assert teardown.call_count == 1
        assert coordinator.state is ShutdownState.CLOSED
        assert coordinator.lines.closed
        assert coordinator._signalled.is_set()
        assert not coordinator._webquit.is_set()
