"""
HTTP endpoints for a running follower.

- GET /metrics: Prometheus exposition of a CollectorRegistry
- GET /healthz: follower health as JSON, 503 once it is not ok

Served by aiohttp.web, which the changes client already depends on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import orjson
from aiohttp import web
from prometheus_client import generate_latest

if TYPE_CHECKING:
    from prometheus_client.registry import CollectorRegistry

logger = logging.getLogger(__name__)

# Text exposition format 0.0.4
METRICS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# Returns follower health; an "ok" of False answers 503
HealthFn = Callable[[], dict[str, Any]]


class _Endpoints:
    """Request handlers bound to one registry and health source."""

    def __init__(
        self,
        registry: CollectorRegistry,
        health_fn: HealthFn | None,
        on_scrape: Callable[[], None] | None,
    ) -> None:
        self._registry = registry
        self._health_fn = health_fn
        self._on_scrape = on_scrape

    async def metrics(self, request: web.Request) -> web.Response:
        if self._on_scrape is not None:
            self._on_scrape()
        return web.Response(
            body=generate_latest(self._registry),
            headers={"Content-Type": METRICS_CONTENT_TYPE},
        )

    async def healthz(self, request: web.Request) -> web.Response:
        info = {"ok": True} if self._health_fn is None else self._health_fn()
        return web.Response(
            body=orjson.dumps(info),
            status=200 if info.get("ok", True) else 503,
            content_type="application/json",
        )


def create_metrics_app(
    registry: CollectorRegistry,
    *,
    health_fn: HealthFn | None = None,
    on_scrape: Callable[[], None] | None = None,
) -> web.Application:
    """
    Build the /metrics + /healthz application.

    Args:
        registry: Registry to expose.
        health_fn: Source of /healthz info (default: always ok).
        on_scrape: Called before each scrape, e.g. to sync an exporter.
    """
    endpoints = _Endpoints(registry, health_fn, on_scrape)
    app = web.Application()
    app.add_routes(
        [
            web.get("/metrics", endpoints.metrics),
            web.get("/healthz", endpoints.healthz),
        ]
    )
    return app


async def start_metrics_server(
    registry: CollectorRegistry,
    host: str = "127.0.0.1",
    port: int = 9090,
    *,
    health_fn: HealthFn | None = None,
    on_scrape: Callable[[], None] | None = None,
) -> web.AppRunner:
    """Serve the metrics app; pass the returned runner to stop_metrics_server."""
    runner = web.AppRunner(
        create_metrics_app(registry, health_fn=health_fn, on_scrape=on_scrape),
        access_log=None,
    )
    await runner.setup()
    await web.TCPSite(runner, host, port).start()
    logger.info("Serving metrics", extra={"host": host, "port": port})
    return runner


async def stop_metrics_server(runner: web.AppRunner) -> None:
    """Shut the metrics server down."""
    await runner.cleanup()
    logger.info("Metrics server stopped")
