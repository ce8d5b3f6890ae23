"""
PokeAPI proxy routes.

Each route returns the flattened upstream shape the dashboard needs, served
from the proxy cache when possible. Anything that keeps upstream from
answering (unknown id, upstream error, open circuit) is a plain 404.
"""

import logging
from typing import Awaitable, Callable, Optional, Tuple

from aiohttp import web

from utils.api_clients import UPSTREAM_ERRORS
from utils.app_keys import API_CLIENT_KEY
from utils.constants import (
    ERROR_INVALID_ABILITY_ID,
    ERROR_INVALID_MOVE_ID,
    ERROR_INVALID_SLUG,
    ERROR_NOT_FOUND,
)
from utils.decorators import log_route_usage
from utils.validators import sanitize_input, validate_resource_id, validate_slug

logger = logging.getLogger("pokemmo_link.routes.proxy")

routes = web.RouteTableDef()


def not_found() -> web.Response:
    return web.json_response({"error": ERROR_NOT_FOUND}, status=404)


async def _proxy(
    identifier: str,
    validator: Callable[[str], Tuple[bool, Optional[str]]],
    fetch: Callable[[str], Awaitable[Optional[dict]]],
    kind: str,
    invalid_message: str,
) -> web.Response:
    identifier = sanitize_input(identifier)
    is_valid, error = validator(identifier)
    if not is_valid:
        return web.json_response({"error": invalid_message, "detail": error}, status=400)

    try:
        data = await fetch(identifier)
    except UPSTREAM_ERRORS as e:
        logger.warning(f"Upstream {kind} lookup for {identifier} failed: {e}")
        return not_found()

    if data is None:
        return not_found()
    return web.json_response(data)


@routes.get("/api/pokemon/{slug}")
@log_route_usage
async def get_pokemon(request: web.Request) -> web.Response:
    """Flattened species data; form keys like `id-479-form-2` are resolved."""
    client = request.app[API_CLIENT_KEY]
    return await _proxy(
        request.match_info["slug"], validate_slug, client.get_species, "species", ERROR_INVALID_SLUG
    )


@routes.get("/api/move/{id}")
@log_route_usage
async def get_move(request: web.Request) -> web.Response:
    client = request.app[API_CLIENT_KEY]
    return await _proxy(
        request.match_info["id"], validate_resource_id, client.get_move, "move", ERROR_INVALID_MOVE_ID
    )


@routes.get("/api/ability/{id}")
@log_route_usage
async def get_ability(request: web.Request) -> web.Response:
    client = request.app[API_CLIENT_KEY]
    return await _proxy(
        request.match_info["id"],
        validate_resource_id,
        client.get_ability,
        "ability",
        ERROR_INVALID_ABILITY_ID,
    )


def setup(app: web.Application) -> None:
    """Register the PokeAPI proxy routes."""
    app.router.add_routes(routes)
    logger.info("Proxy routes loaded")
