"""
Main entry point for the PokeMMO Link dashboard server.

This module builds the aiohttp application, wires the shared services into
it and runs it. It covers:
- Logging setup (stdout and a log file).
- Startup of the database, resource caches, PokeAPI client and flows.
- Global JSON error handling.
- Graceful shutdown of background work and connections.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

from aiohttp import web

from config.settings import (
    CACHE_DIR,
    DATA_DIR,
    DB_CONNECTION_STRING,
    DEFAULT_PC_BOX,
    HOST,
    LOG_FILE,
    LOG_LEVEL,
    MAX_CONCURRENT_API_REQUESTS,
    MAX_RETRY_ATTEMPTS,
    POKEAPI_URL,
    POLL_INTERVAL,
    PORT,
    RESOURCE_CACHE_BACKEND,
    RETRY_BASE_DELAY,
    validate_settings,
)
from routes import admin, dashboard, ingest, proxy
from utils.api_clients import PokeAPIClient
from utils.app_keys import (
    API_CLIENT_KEY,
    BROKEN_SPRITES_KEY,
    CONTAINER_STORE_KEY,
    DATABASE_KEY,
    ENRICHER_KEY,
    FLOWS_KEY,
    RESOURCE_CACHES_KEY,
    SETTINGS_KEY,
    STARTED_AT_KEY,
)
from utils.batch_fetcher import BatchFetcher
from utils.constants import ERROR_INTERNAL, SHUTDOWN_GRACE_PERIOD
from utils.container_store import ContainerStore
from utils.database import open_database
from utils.enrichment import BrokenSpriteRegistry, Enricher
from utils.flow import FlowManager
from utils.resource_cache import ResourceCaches
from utils.storage import create_store

logger = logging.getLogger("pokemmo_link")


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(LOG_FILE, encoding="utf-8"),
        ],
    )
    logging.getLogger().setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn unexpected exceptions into a JSON 500. HTTP exceptions pass through."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(
            f"Unhandled error in {request.method} {request.path}: {e}",
            exc_info=e,
        )
        return web.json_response({"success": False, "message": ERROR_INTERNAL}, status=500)


def create_app(
    data_dir: Path = DATA_DIR,
    cache_backend: str = RESOURCE_CACHE_BACKEND,
    db_connection_string: Optional[str] = DB_CONNECTION_STRING,
    pokeapi_url: str = POKEAPI_URL,
    poll_interval: float = POLL_INTERVAL,
    validate_upstream: bool = True,
    max_retries: int = MAX_RETRY_ATTEMPTS,
    retry_base_delay: float = RETRY_BASE_DELAY,
    cache_dir: Path = CACHE_DIR,
) -> web.Application:
    """
    Build the dashboard application.

    Args:
        data_dir: Directory holding the container dumps.
        cache_backend: Resource cache backend ('sqlite', 'json' or 'memory').
        db_connection_string: SQLite connection string, or None to run
            without a database (no proxy cache, no sqlite backend).
        pokeapi_url: PokeAPI root.
        poll_interval: Seconds between raw container polls.
        validate_upstream: Probe PokeAPI once at startup.
        max_retries: Attempts per upstream request.
        retry_base_delay: First backoff delay for upstream retries.
        cache_dir: Directory for the 'json' cache backend.
    """
    app = web.Application(middlewares=[error_middleware])
    app[SETTINGS_KEY] = {
        "data_dir": str(data_dir),
        "cache_backend": cache_backend,
        "pokeapi_url": pokeapi_url,
        "poll_interval": poll_interval,
    }

    async def services(app: web.Application):
        """Create the shared services on startup and release them on shutdown."""
        logger.info("Server startup - initializing services")
        app[STARTED_AT_KEY] = time.time()

        database = await open_database(db_connection_string) if db_connection_string else None
        app[DATABASE_KEY] = database

        store = create_store(cache_backend, database=database, directory=Path(cache_dir))
        caches = ResourceCaches(store)
        await caches.init_all()
        app[RESOURCE_CACHES_KEY] = caches

        client = PokeAPIClient(
            base_url=pokeapi_url,
            database=database,
            max_retries=max_retries,
            retry_base_delay=retry_base_delay,
        )
        app[API_CLIENT_KEY] = client
        if validate_upstream:
            logger.info("Validating PokeAPI connectivity...")
            await client.validate_api_connectivity()

        fetchers = {
            "species": BatchFetcher(caches.species, client.get_species, MAX_CONCURRENT_API_REQUESTS),
            "move": BatchFetcher(caches.moves, client.get_move, MAX_CONCURRENT_API_REQUESTS),
            "ability": BatchFetcher(caches.abilities, client.get_ability, MAX_CONCURRENT_API_REQUESTS),
        }
        broken_sprites = BrokenSpriteRegistry()
        enricher = Enricher(caches, fetchers, broken_sprites)
        app[BROKEN_SPRITES_KEY] = broken_sprites
        app[ENRICHER_KEY] = enricher

        container_store = ContainerStore(data_dir)
        app[CONTAINER_STORE_KEY] = container_store
        app[FLOWS_KEY] = FlowManager(
            container_store.load_state,
            enricher,
            poll_interval=poll_interval,
            initial_box=DEFAULT_PC_BOX,
        )
        logger.info("✅ Services ready")

        yield

        logger.info("Server shutdown initiated - cleaning up resources")
        await app[FLOWS_KEY].stop_all()
        await client.close()
        if database is not None:
            await database.close()

    app.cleanup_ctx.append(services)

    for module in (ingest, proxy, dashboard, admin):
        module.setup(app)

    return app


def main() -> None:
    setup_logging()

    try:
        validate_settings()
        logger.info("✅ Configuration validation passed")
    except ValueError as e:
        logger.critical(f"❌ Configuration validation failed: {e}")
        sys.exit(1)

    web.run_app(create_app(), host=HOST, port=PORT, shutdown_timeout=SHUTDOWN_GRACE_PERIOD)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Server stopped by user (Ctrl+C)")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=e)
        sys.exit(1)
