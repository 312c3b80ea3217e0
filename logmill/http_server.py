"""
LogMill HTTP Control Surface

Builds the daemon's FastAPI application and runs it under uvicorn as a
tracked asyncio task.

Routes:
  • GET  /              static discovery page linking the export endpoints
  • POST /quitquitquit  acknowledge and request graceful shutdown
  • GET  /json          delegated to the exporter
  • GET  /metrics       delegated to the exporter

Any method other than POST on /quitquitquit gets 405 with `Allow: POST`
and changes nothing. The application is an owned instance built per
coordinator, never a module-level registry.

Signal handling belongs to the coordinator, so the uvicorn server is run
with its own signal capture disabled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Iterator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, Response

from . import __version__
from .exporter import Exporter

log = logging.getLogger("logmill.http_server")

# ── Constants ─────────────────────────────────────────────────────────────────

INDEX_HTML = '<a href="/json">json</a>, <a href="/metrics">prometheus metrics</a>'
QUIT_PATH = "/quitquitquit"
QUIT_BODY = "Exiting..."


# ── FastAPI App ───────────────────────────────────────────────────────────────


def create_app(on_quit: Callable[[], None], exporter: Exporter | None = None) -> FastAPI:
    """
    Build the control-surface application.

    Args:
        on_quit: called once per accepted POST to the quit endpoint. It must
            be safe to call repeatedly.
        exporter: provides the /json and /metrics handlers.
    """
    app = FastAPI(
        title="LogMill",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.api_route("/", methods=["GET", "HEAD"], response_class=HTMLResponse)
    async def index() -> HTMLResponse:
        return HTMLResponse(INDEX_HTML)

    async def quit_handler(request: Request) -> Response:
        if request.method != "POST":
            return Response(status_code=405, headers={"Allow": "POST"})
        log.info(f"> HTTP: Quit requested by {request.client.host if request.client else 'unknown'}")
        on_quit()
        return PlainTextResponse(QUIT_BODY)

    # No method restriction: every non-POST method must see `Allow: POST`.
    app.add_route(QUIT_PATH, quit_handler)

    if exporter is not None:
        app.include_router(exporter.router)

    return app


# ── Server Bootstrap ──────────────────────────────────────────────────────────


class _Server(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the coordinator."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class HTTPServer:
    """Runs the control-surface app as a tracked background task."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        config = uvicorn.Config(
            app=app,
            host=host,
            port=port,
            log_level="warning",       # Suppress uvicorn chatter
            access_log=False,
            loop="asyncio",
            lifespan="off",
        )
        self.server = _Server(config)
        self.task: asyncio.Task[None] | None = None

    def start(self) -> asyncio.Task[None]:
        log.info(f"> HTTP: Listening on {self.host}:{self.port}")
        self.task = asyncio.create_task(self.server.serve(), name="http")
        return self.task

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait until the listening socket is released."""
        if self.task is None:
            return
        self.server.should_exit = True
        await self.task
        log.info("> HTTP: Listener stopped.")
