"""
Operational routes: health, cache statistics, manual cache reset and broken
sprite reports.
"""

import json
import logging
import time

from aiohttp import web

from utils.app_keys import (
    API_CLIENT_KEY,
    BROKEN_SPRITES_KEY,
    DATABASE_KEY,
    FLOWS_KEY,
    RESOURCE_CACHES_KEY,
    STARTED_AT_KEY,
)
from utils.circuit_breaker import CircuitState
from utils.constants import SUCCESS_CACHE_CLEARED
from utils.decorators import log_route_usage
from utils.validators import validate_sprite_url

logger = logging.getLogger("pokemmo_link.routes.admin")

routes = web.RouteTableDef()


@routes.post("/api/sprites/broken")
@log_route_usage
async def report_broken_sprite(request: web.Request) -> web.Response:
    """
    Mark a sprite URL as broken for the rest of the session.

    Body: {"url": "<sprite url>"}. Subsequent enrichments skip the URL in the
    sprite fallback chain.
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        body = None

    url = body.get("url") if isinstance(body, dict) else None
    is_valid, error = validate_sprite_url(url)
    if not is_valid:
        return web.json_response({"success": False, "message": error}, status=400)

    registry = request.app[BROKEN_SPRITES_KEY]
    added = registry.report(url)
    return web.json_response({"success": True, "added": added, "broken_count": len(registry)})


@routes.get("/api/health")
@log_route_usage
async def health(request: web.Request) -> web.Response:
    """
    Liveness plus upstream state.

    `status` is 'degraded' while the PokeAPI circuit breaker is not closed;
    cached data is still served then.
    """
    client = request.app[API_CLIENT_KEY]
    database = request.app.get(DATABASE_KEY)
    breaker = client.breaker

    status = "ok" if breaker.state == CircuitState.CLOSED else "degraded"
    return web.json_response(
        {
            "status": status,
            "uptime_seconds": round(time.time() - request.app[STARTED_AT_KEY], 1),
            "database": {"enabled": database is not None, "connected": bool(database and database.is_connected)},
            "circuit_breakers": client.get_circuit_breaker_stats(),
            "flows": request.app[FLOWS_KEY].get_stats(),
        }
    )


@routes.get("/api/cache/stats")
@log_route_usage
async def cache_stats(request: web.Request) -> web.Response:
    client = request.app[API_CLIENT_KEY]
    return web.json_response(
        {
            "resources": request.app[RESOURCE_CACHES_KEY].get_stats(),
            "proxy": await client.get_cache_stats(),
            "deduplication": client.get_deduplication_stats(),
            "broken_sprites": len(request.app[BROKEN_SPRITES_KEY]),
        }
    )


@routes.delete("/api/cache")
@log_route_usage
async def clear_cache(request: web.Request) -> web.Response:
    """
    Manual reset: empties every resource cache and the proxy cache and closes
    the circuit breaker.
    """
    client = request.app[API_CLIENT_KEY]
    await request.app[RESOURCE_CACHES_KEY].clear_all()
    await client.clear_cache()
    await client.breaker.reset()
    logger.info("All caches cleared on request")
    return web.json_response({"success": True, "message": SUCCESS_CACHE_CLEARED})


def setup(app: web.Application) -> None:
    """Register the operational routes."""
    app.router.add_routes(routes)
    logger.info("Admin routes loaded")
