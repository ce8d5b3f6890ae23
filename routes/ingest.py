"""
Ingest and state routes.

The capture agent POSTs container dumps to `/api/ingest`; the dashboard reads
them back through `/api/state`. Each container type has one dump on disk,
overwritten by every ingest.
"""

import json
import logging

from aiohttp import web
from pydantic import ValidationError

from utils.app_keys import CONTAINER_STORE_KEY
from utils.constants import (
    ERROR_INGEST_FAILED,
    ERROR_STATE_FAILED,
    ERROR_VALIDATION,
    SUCCESS_INGESTED,
)
from utils.decorators import log_route_usage
from utils.schemas import envelope_to_dict, format_validation_issues, validate_envelope
from utils.validators import normalize_source

logger = logging.getLogger("pokemmo_link.routes.ingest")

routes = web.RouteTableDef()


def _validation_error(issues) -> web.Response:
    return web.json_response(
        {"success": False, "error": ERROR_VALIDATION, "issues": issues},
        status=400,
    )


@routes.post("/api/ingest")
@log_route_usage
async def ingest(request: web.Request) -> web.Response:
    """
    Validate a container dump and store it as `dump-<container_type>.json`.

    Responses:
        200 {success: true, message}
        400 {success: false, error: 'Validation error', issues: [...]}
        500 {success: false, message: 'Failed to ingest data'}
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Rejected malformed ingest body: {e}")
        reason = e.msg if isinstance(e, json.JSONDecodeError) else f"invalid UTF-8 ({e.reason})"
        return _validation_error(
            [{"path": "", "message": f"Malformed JSON: {reason}", "type": "json_invalid"}]
        )

    try:
        envelope = validate_envelope(payload)
    except ValidationError as e:
        issues = format_validation_issues(e)
        logger.warning(
            f"Rejected ingest payload with {len(issues)} issue(s)",
            extra={"issues": issues[:5]},
        )
        return _validation_error(issues)

    container_type = envelope.container_type
    try:
        await request.app[CONTAINER_STORE_KEY].write(container_type, envelope_to_dict(envelope))
    except Exception as e:
        logger.error(f"Error ingesting {container_type} data: {e}", exc_info=True)
        return web.json_response({"success": False, "message": ERROR_INGEST_FAILED}, status=500)

    return web.json_response(
        {
            "success": True,
            "message": SUCCESS_INGESTED.format(container_type=container_type),
        }
    )


@routes.get("/api/state")
@log_route_usage
async def get_state(request: web.Request) -> web.Response:
    """
    Return the stored dump for `?source=` (party, daycare or pc_boxes).

    Unknown sources fall back to the party. A container that was never
    captured yields an empty envelope stamped with the current time.
    """
    source, fell_back = normalize_source(request.query.get("source"))
    if fell_back:
        logger.warning(
            f"Unknown state source {request.query.get('source')!r}, using {source}"
        )

    try:
        envelope = await request.app[CONTAINER_STORE_KEY].load_state(source)
    except Exception as e:
        logger.error(f"Error reading {source} state: {e}", exc_info=True)
        return web.json_response({"success": False, "message": ERROR_STATE_FAILED}, status=500)

    return web.json_response(envelope)


def setup(app: web.Application) -> None:
    """Register the ingest and state routes."""
    app.router.add_routes(routes)
    logger.info("Ingest routes loaded")
