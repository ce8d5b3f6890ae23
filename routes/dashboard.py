"""
Dashboard routes: the enriched view of a container.

The first request for a source starts its flow. Each request then waits
briefly for the flow to settle so a fresh dashboard usually gets ready data
instead of a loading placeholder.
"""

import logging

from aiohttp import web

from utils.app_keys import FLOWS_KEY
from utils.constants import DASHBOARD_SETTLE_TIMEOUT, ERROR_UNKNOWN_SOURCE, STATE_SOURCES
from utils.decorators import log_route_usage
from utils.validators import validate_box_id, validate_region

logger = logging.getLogger("pokemmo_link.routes.dashboard")

routes = web.RouteTableDef()


def _unknown_source(source: str) -> web.Response:
    return web.json_response({"error": ERROR_UNKNOWN_SOURCE, "source": source}, status=404)


@routes.get("/api/dashboard/{source}")
@log_route_usage
async def get_dashboard(request: web.Request) -> web.Response:
    """
    Snapshot of one container flow.

    Query:
        box: PC box to show (pc_boxes only). Invalid ids are ignored.
        region: Daycare region to show (daycare only), or 'all'. Unknown
            regions are ignored.
    """
    source = request.match_info["source"]
    if source not in STATE_SOURCES:
        return _unknown_source(source)

    flow = request.app[FLOWS_KEY].get_or_start(source)

    box_id = request.query.get("box")
    if box_id is not None:
        is_valid, error = validate_box_id(box_id)
        if is_valid:
            flow.set_active_box(box_id)
        else:
            logger.warning(f"Ignoring box {box_id!r} for {source}: {error}")

    region = request.query.get("region")
    if region is not None:
        is_valid, error = validate_region(region)
        if is_valid:
            flow.set_active_region(region)
        else:
            logger.warning(f"Ignoring region {region!r} for {source}: {error}")

    snapshot = await flow.wait_settled(DASHBOARD_SETTLE_TIMEOUT)
    return web.json_response(snapshot.to_dict())


@routes.post("/api/dashboard/{source}/refresh")
@log_route_usage
async def refresh_dashboard(request: web.Request) -> web.Response:
    source = request.match_info["source"]
    if source not in STATE_SOURCES:
        return _unknown_source(source)

    flow = request.app[FLOWS_KEY].get_or_start(source)
    flow.refresh()
    return web.json_response(flow.snapshot().to_dict())


def setup(app: web.Application) -> None:
    """Register the dashboard routes."""
    app.router.add_routes(routes)
    logger.info("Dashboard routes loaded")
