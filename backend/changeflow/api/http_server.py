"""
Operational HTTP endpoints for the changeflow service.

The engine has no business API; it is driven entirely by queue
messages. This server exposes liveness and counters for operators and
orchestrators.

Endpoints:
    GET /v1/health              200 when every tenant worker runs, else 503
    GET /v1/stats               Counters of every tenant worker
    GET /v1/stats/{tenant_code} Counters of one tenant worker

Invariants:
    - Endpoints are read-only
    - Responses are JSON

How to change safely:
    - Keep /v1/health cheap; orchestrators poll it frequently
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from aiohttp import web

logger = logging.getLogger(__name__)


class StatsSource(Protocol):
    """What the HTTP server needs from the running service."""

    def health(self) -> dict[str, Any]:
        ...

    def stats(self) -> dict[str, dict[str, Any]]:
        ...


def create_http_app(source: StatsSource) -> web.Application:
    """Create the aiohttp application.

    Args:
        source: Running service (normally main.Server)
    """
    app = web.Application()
    app.router.add_get("/v1/health", lambda r: handle_health(r, source))
    app.router.add_get("/v1/stats", lambda r: handle_stats(r, source))
    app.router.add_get("/v1/stats/{tenant_code}", lambda r: handle_tenant_stats(r, source))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.append(error_middleware)
    return app


async def handle_health(request: web.Request, source: StatsSource) -> web.Response:
    """Handle GET /v1/health."""
    result = source.health()
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)


async def handle_stats(request: web.Request, source: StatsSource) -> web.Response:
    """Handle GET /v1/stats."""
    return web.json_response({"tenants": source.stats()})


async def handle_tenant_stats(request: web.Request, source: StatsSource) -> web.Response:
    """Handle GET /v1/stats/{tenant_code}."""
    tenant_code = request.match_info["tenant_code"]
    stats = source.stats().get(tenant_code)
    if stats is None:
        return web.json_response(
            {"error": f"Unknown tenant: {tenant_code}", "error_code": "UNKNOWN_TENANT"},
            status=404,
        )
    return web.json_response(stats)


async def run_http_server(source: StatsSource, host: str = "0.0.0.0", port: int = 8080) -> None:
    """Run the HTTP server until cancelled."""
    app = create_http_app(source)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"HTTP server running on http://{host}:{port}")

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
