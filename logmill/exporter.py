"""
LogMill Metrics Exporter

Serves snapshots of the metrics store over HTTP and optionally pushes them
to an external sink.

Provides three capabilities:
  1. handle_json() - the full store snapshot as JSON (GET /json)
  2. handle_prometheus_metrics() - Prometheus text exposition (GET /metrics)
  3. write_metrics() / start_metric_push() - POST the JSON snapshot to
     push_url, once or periodically

Push failures are logged and never stall the daemon.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
import time
from typing import Any, Iterator

import aiohttp
from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric as PromMetric

from .store import Metric, MetricKind, MetricsStore

log = logging.getLogger("logmill.exporter")

# ── Config ────────────────────────────────────────────────────────────────────

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15)
MAX_RETRIES = 3
RETRY_BACKOFF = 1.5  # seconds

PROGRAM_LABEL = "prog"


# ── Prometheus ────────────────────────────────────────────────────────────────


class StoreCollector:
    """prometheus_client collector that reads the metrics store on each scrape."""

    def __init__(self, store: MetricsStore) -> None:
        self.store = store

    def collect(self) -> Iterator[PromMetric]:
        families: dict[tuple[str, MetricKind, tuple[str, ...]], list[Metric]] = {}
        for metric in self.store:
            families.setdefault((metric.name, metric.kind, metric.keys), []).append(metric)

        for (name, kind, keys), metrics in families.items():
            family_cls = CounterMetricFamily if kind is MetricKind.COUNTER else GaugeMetricFamily
            programs = ", ".join(sorted({m.program for m in metrics}))
            family = family_cls(
                name,
                f"{kind.value} {name} defined in {programs}",
                labels=[*keys, PROGRAM_LABEL],
            )
            for metric in metrics:
                for label_values, datum in sorted(metric.datums.items()):
                    family.add_metric([*label_values, metric.program], datum.value)
            yield family


# ── Push helpers ──────────────────────────────────────────────────────────────


async def _post(session: aiohttp.ClientSession, url: str, payload: dict) -> None:
    """Perform a POST with retry-backoff logic."""
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            async with session.post(url, json=payload, timeout=REQUEST_TIMEOUT) as resp:
                resp.raise_for_status()
                return
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if attempt == MAX_RETRIES:
                raise
            wait = RETRY_BACKOFF ** attempt
            log.warning(f"POST {url} failed (attempt {attempt}): {e}. Retrying in {wait}s...")
            await asyncio.sleep(wait)


# ── Exporter ──────────────────────────────────────────────────────────────────


class Exporter:
    """Encodes store snapshots for HTTP handlers and push sinks."""

    def __init__(
        self,
        store: MetricsStore,
        push_url: str = "",
        push_interval: float = 60.0,
        hostname: str | None = None,
    ) -> None:
        self.store = store
        self.push_url = push_url
        self.push_interval = push_interval
        self.hostname = hostname or socket.gethostname()
        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(StoreCollector(store))
        self._push_task: asyncio.Task[None] | None = None

    # ── HTTP handlers ─────────────────────────────────────────────────────────

    def prometheus_text(self) -> bytes:
        return generate_latest(self.registry)

    async def handle_json(self) -> JSONResponse:
        return JSONResponse(self.store.snapshot())

    async def handle_prometheus_metrics(self) -> Response:
        return Response(content=self.prometheus_text(), media_type=CONTENT_TYPE_LATEST)

    @property
    def router(self) -> APIRouter:
        router = APIRouter()
        router.add_api_route("/json", self.handle_json, methods=["GET"])
        router.add_api_route("/metrics", self.handle_prometheus_metrics, methods=["GET"])
        return router

    # ── Push ──────────────────────────────────────────────────────────────────

    def push_payload(self) -> dict[str, Any]:
        return {
            "hostname": self.hostname,
            "timestamp": time.time(),
            "metrics": self.store.snapshot(),
        }

    async def write_metrics(self) -> bool:
        """
        Push one snapshot to push_url.

        Returns:
            True if the sink accepted it, False on failure or when no sink
            is configured.
        """
        if not self.push_url:
            return False
        try:
            async with aiohttp.ClientSession() as session:
                await _post(session, self.push_url, self.push_payload())
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            log.warning(f"> EXPORT: Push to {self.push_url} failed (non-critical): {exc}")
            return False
        log.debug(f"> EXPORT: Pushed {len(self.store)} metric(s) to {self.push_url}")
        return True

    async def _push_loop(self) -> None:
        while True:
            await asyncio.sleep(self.push_interval)
            await self.write_metrics()

    def start_metric_push(self) -> asyncio.Task[None] | None:
        """Start the periodic push task. No-op without a push_url."""
        if not self.push_url or self._push_task is not None:
            return self._push_task
        self._push_task = asyncio.create_task(self._push_loop(), name="metric-push")
        log.info(f"> EXPORT: Pushing metrics to {self.push_url} every {self.push_interval}s")
        return self._push_task

    async def stop_metric_push(self) -> None:
        task, self._push_task = self._push_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
