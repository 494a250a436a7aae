"""
Ops HTTP server for GraphSync.

Endpoints:
    GET  /v1/health   liveness of the store and queue
    GET  /v1/status   queue depth, convergence lag, component stats
    POST /v1/sweep    schedule a comparison sweep
    POST /v1/rebuild  schedule a full rebuild
    POST /v1/queue    enqueue a key: {"actor_key": "...", "kind": 3}

Invariants:
    - JSON request/response format
    - Trigger endpoints schedule work and return 202; they never block
      on the work itself

How to change safely:
    - Version the API if breaking changes are needed
    - Keep the handlers thin; logic lives in SyncServicer
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..errors import GraphSyncError, TransientIOError
from .servicer import SyncServicer

logger = logging.getLogger(__name__)


def create_http_app(servicer: SyncServicer) -> web.Application:
    """Create the ops HTTP application.

    Args:
        servicer: SyncServicer instance

    Returns:
        aiohttp Application instance
    """
    app = web.Application()

    app.router.add_get("/v1/health", lambda r: handle_health(r, servicer))
    app.router.add_get("/v1/status", lambda r: handle_status(r, servicer))
    app.router.add_post("/v1/sweep", lambda r: handle_sweep(r, servicer))
    app.router.add_post("/v1/rebuild", lambda r: handle_rebuild(r, servicer))
    app.router.add_post("/v1/queue", lambda r: handle_enqueue(r, servicer))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TransientIOError as e:
            logger.warning(f"Backend unavailable: {e}")
            return web.json_response({"error": e.message, "error_code": e.code}, status=503)
        except GraphSyncError as e:
            logger.error(f"HTTP handler error: {e}")
            return web.json_response({"error": e.message, "error_code": e.code}, status=500)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.append(error_middleware)

    return app


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message}),
        content_type="application/json",
    )


async def _optional_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise _bad_request("Invalid JSON body")
    if not isinstance(body, dict):
        raise _bad_request("JSON body must be an object")
    return body


async def handle_health(request: web.Request, servicer: SyncServicer) -> web.Response:
    """Handle GET /v1/health - Health check."""
    result = await servicer.health()
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)


async def handle_status(request: web.Request, servicer: SyncServicer) -> web.Response:
    """Handle GET /v1/status - Queue depth, lag and component stats."""
    return web.json_response(await servicer.status())


async def handle_sweep(request: web.Request, servicer: SyncServicer) -> web.Response:
    """Handle POST /v1/sweep - Schedule a comparison sweep."""
    body = await _optional_json(request)
    result = await servicer.request_sweep(reason=body.get("reason", "manual trigger"))
    return web.json_response(result, status=202)


async def handle_rebuild(request: web.Request, servicer: SyncServicer) -> web.Response:
    """Handle POST /v1/rebuild - Schedule a full rebuild."""
    body = await _optional_json(request)
    result = await servicer.request_rebuild(reason=body.get("reason", "manual trigger"))
    return web.json_response(result, status=202)


async def handle_enqueue(request: web.Request, servicer: SyncServicer) -> web.Response:
    """Handle POST /v1/queue - Enqueue one (actor_key, kind)."""
    body = await _optional_json(request)
    actor_key = body.get("actor_key")
    kind = body.get("kind")
    if not isinstance(actor_key, str) or not actor_key:
        raise _bad_request("actor_key is required")
    if isinstance(kind, bool) or not isinstance(kind, int):
        raise _bad_request("kind must be an integer")

    try:
        result = await servicer.enqueue(actor_key, kind)
    except ValueError as e:
        raise _bad_request(str(e))
    return web.json_response(result, status=202)


async def run_http_server(servicer: SyncServicer, host: str = "127.0.0.1", port: int = 8081) -> None:
    """Run the HTTP server until cancelled.

    Args:
        servicer: SyncServicer instance
        host: Host to bind to
        port: Port to listen on
    """
    app = create_http_app(servicer)

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
