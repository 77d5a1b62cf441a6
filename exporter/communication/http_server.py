"""
HTTP surface of the exporter.

This module exposes the serving cache over HTTP. It is a thin adapter: every
decision about what the metrics body contains is made by the refresh
coordinator and the cache.

Routes:
    GET|HEAD /metrics          Cached plugin metrics (refreshed first under on_request)
    GET|HEAD /default-metrics  Process/platform/GC metrics of the default registry
    anything else         Status line with start time and uptime

Architecture:
    - FastAPI application built by create_app()
    - ExporterHTTPServer runs it on uvicorn inside the exporter's event loop
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import uvicorn
from fastapi import FastAPI, Response
from fastapi.responses import PlainTextResponse
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry

from ..cache import ServingCache
from ..refresh import RefreshCoordinator, RefreshPolicy
from ..registry import render_registry

ANY_METHOD = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@dataclass
class ProcessClock:
    """
    Start time and uptime of the process.

    Uptime is measured on the monotonic clock so it never goes backwards,
    even if the wall clock is adjusted.
    """
    started_at: float = field(default_factory=time.time)
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    @property
    def started_at_ms(self) -> int:
        return int(self.started_at * 1000)

    def uptime_ms(self) -> int:
        return int((time.monotonic() - self._started_monotonic) * 1000)

    def status_line(self) -> str:
        return f"Server started at {self.started_at_ms}, uptime: {self.uptime_ms()}ms"


def create_app(
    cache: ServingCache,
    coordinator: RefreshCoordinator,
    policy: RefreshPolicy = RefreshPolicy.INTERVAL,
    default_registry: Optional[CollectorRegistry] = None,
    clock: Optional[ProcessClock] = None,
) -> FastAPI:
    """
    Build the exporter's FastAPI application.

    Args:
        cache: Serving cache read by /metrics
        coordinator: Refresh coordinator, awaited per scrape under on_request
        policy: Refresh policy in effect
        default_registry: Registry served on /default-metrics (None disables the route)
        clock: Process clock for the status line

    Returns:
        FastAPI application
    """
    policy = RefreshPolicy(policy)
    clock = clock or ProcessClock()
    app = FastAPI(title="plugin-exporter", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.clock = clock

    @app.api_route("/metrics", methods=["GET", "HEAD"])
    async def metrics():
        log = logger.bind(context="http.metrics")
        try:
            if policy is RefreshPolicy.ON_REQUEST:
                result = await coordinator.refresh()
                if not result.published:
                    log.error(f"Scrape failed, refresh cycle {result.cycle} did not render")
                    return PlainTextResponse("Internal Server Error", status_code=500)

            snapshot = cache.read()
            headers = {}
            if snapshot.last_updated_ms is not None:
                headers["X-Metrics-Last-Updated"] = str(snapshot.last_updated_ms)
            return Response(content=snapshot.text, media_type=CONTENT_TYPE_LATEST, headers=headers)
        except Exception as e:
            log.error(f"Error processing request: {e}")
            return PlainTextResponse("Internal Server Error", status_code=500)

    if default_registry is not None:
        @app.api_route("/default-metrics", methods=["GET", "HEAD"])
        async def default_metrics():
            try:
                text = await render_registry(default_registry)
            except Exception as e:
                logger.bind(context="http.default_metrics").error(f"Error processing request: {e}")
                return PlainTextResponse("Internal Server Error", status_code=500)
            return Response(content=text, media_type=CONTENT_TYPE_LATEST)

    @app.api_route("/{path:path}", methods=ANY_METHOD)
    async def status(path: str):
        return PlainTextResponse(clock.status_line())

    return app


class ExporterHTTPServer:
    """
    Runs the exporter application on uvicorn.

    start_server() returns when the server shuts down. Failing to bind the
    port makes uvicorn exit with SystemExit, which is left to propagate: it is
    the one fatal startup condition of the exporter.
    """

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 3000):
        """
        Initialize the HTTP server.

        Args:
            app: Application returned by create_app()
            host: Interface to bind
            port: Port to bind
        """
        self.app = app
        self.host = host
        self.port = port
        self._server: Optional[uvicorn.Server] = None

    @property
    def is_running(self) -> bool:
        return self._server is not None and self._server.started

    async def start_server(self):
        """Serve until stop_server() is called."""
        log = logger.bind(context="ExporterHTTPServer.start_server")
        log.info(f"Starting HTTP server on {self.host}:{self.port}")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)

        try:
            await self._server.serve()
        except Exception as e:
            log.error(f"HTTP server error: {e}")
            raise
        log.info("HTTP server stopped")

    async def stop_server(self):
        """Ask uvicorn to finish in-flight requests and exit."""
        log = logger.bind(context="ExporterHTTPServer.stop_server")
        if self._server is None:
            return
        log.info("Stopping HTTP server")
        self._server.should_exit = True
