"""
Typed keys for the shared services stored on the aiohttp application.

Services are created once in the server's startup context and looked up by
request handlers through these keys.
"""

from aiohttp import web

from utils.api_clients import PokeAPIClient
from utils.container_store import ContainerStore
from utils.database import Database
from utils.enrichment import BrokenSpriteRegistry, Enricher
from utils.flow import FlowManager
from utils.resource_cache import ResourceCaches

SETTINGS_KEY = web.AppKey("settings", dict)
STARTED_AT_KEY = web.AppKey("started_at", float)
DATABASE_KEY = web.AppKey("database", Database)
API_CLIENT_KEY = web.AppKey("api_client", PokeAPIClient)
RESOURCE_CACHES_KEY = web.AppKey("resource_caches", ResourceCaches)
CONTAINER_STORE_KEY = web.AppKey("container_store", ContainerStore)
BROKEN_SPRITES_KEY = web.AppKey("broken_sprites", BrokenSpriteRegistry)
ENRICHER_KEY = web.AppKey("enricher", Enricher)
FLOWS_KEY = web.AppKey("flows", FlowManager)
