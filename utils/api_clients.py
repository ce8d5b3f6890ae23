"""
API Client module for fetching species, move and ability data from PokeAPI.

Upstream payloads are large; this module fetches them once, flattens them to
the few fields the dashboard needs and caches the flattened result. It
implements the usual infrastructure patterns: connection pooling, a circuit
breaker, retries with exponential backoff, request deduplication and a
SQLite-backed response cache.
"""

import asyncio
import hashlib
import logging
from collections import defaultdict
from typing import Any, Dict, Optional

import aiohttp

from config.settings import (
    API_REQUEST_TIMEOUT,
    BREAKER_FAILURE_THRESHOLD,
    BREAKER_RECOVERY_TIMEOUT,
    BREAKER_SUCCESS_THRESHOLD,
    CACHE_CLEANUP_INTERVAL,
    MAX_CONCURRENT_API_REQUESTS,
    MAX_PROXY_CACHE_SIZE,
    MAX_RETRY_ATTEMPTS,
    POKEAPI_URL,
    PROXY_CACHE_TIMEOUT,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
)
from utils.api_models import (
    AbilityData,
    DeduplicationStats,
    MoveData,
    SpeciesData,
)
from utils.circuit_breaker import CircuitBreaker, CircuitBreakerError
from utils.constants import (
    API_STARTUP_VALIDATION_TIMEOUT,
    CACHE_KEY_HASH_ALGORITHM,
    GENDERLESS_RATIO,
    POKEMON_TYPES,
)
from utils.database import Database
from utils.decorators import retry_on_error
from utils.helpers import english_flavor_text, id_from_resource_url, parse_form_key

logger = logging.getLogger("pokemmo_link.api")

# Connection pool settings
CONNECTION_POOL_LIMIT = 100  # Total connections across all hosts
CONNECTION_POOL_LIMIT_PER_HOST = 30  # Max connections per host
CONNECTION_KEEPALIVE_TIMEOUT = 30  # Seconds to keep idle connections

UPSTREAM_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def flatten_species(
    pokemon: Dict[str, Any],
    gender_rate: int = GENDERLESS_RATIO,
    growth_rate: Optional[str] = None,
) -> SpeciesData:
    """
    Reduce a PokeAPI `pokemon` resource to SpeciesData.

    Args:
        pokemon: Raw `/pokemon/{slug}` payload.
        gender_rate: Female ratio in eighths from the species resource, -1 if unknown.
        growth_rate: Growth rate name from the species resource.
    """
    sprites = pokemon.get("sprites") or {}
    animated = (
        ((sprites.get("versions") or {}).get("generation-v") or {}).get("black-white") or {}
    ).get("animated") or {}

    stats = {}
    for entry in pokemon.get("stats") or []:
        name = (entry.get("stat") or {}).get("name")
        if name:
            stats[name] = entry.get("base_stat")

    types = [
        (entry.get("type") or {}).get("name")
        for entry in pokemon.get("types") or []
    ]

    return {
        "id": pokemon.get("id"),
        "name": pokemon.get("name"),
        "sprites": {
            "front_default": sprites.get("front_default"),
            "front_shiny": sprites.get("front_shiny"),
            "animated": animated.get("front_default"),
            "animated_shiny": animated.get("front_shiny"),
        },
        "stats": stats,
        "types": [t for t in types if t in POKEMON_TYPES],
        "abilities": pokemon.get("abilities") or [],
        "gender_rate": gender_rate,
        "growth_rate": growth_rate,
    }


def flatten_move(move: Dict[str, Any]) -> MoveData:
    """Reduce a PokeAPI `move` resource to MoveData."""
    type_name = (move.get("type") or {}).get("name")
    return {
        "id": move.get("id"),
        "name": move.get("name"),
        "type": type_name if type_name in POKEMON_TYPES else None,
        "power": move.get("power"),
        "accuracy": move.get("accuracy"),
        "pp": move.get("pp"),
        "damage_class": (move.get("damage_class") or {}).get("name"),
        "description": english_flavor_text(move.get("flavor_text_entries")),
    }


def flatten_ability(ability: Dict[str, Any]) -> AbilityData:
    """Reduce a PokeAPI `ability` resource to AbilityData."""
    return {
        "id": ability.get("id"),
        "name": ability.get("name"),
        "description": english_flavor_text(ability.get("flavor_text_entries")),
    }


class PokeAPIClient:
    """
    Client for the species/move/ability lookups behind the proxy routes and
    the enrichment pipeline.

    Key Features:
    - **Connection Pooling**: One `aiohttp.ClientSession` with a tuned `TCPConnector`.
    - **Circuit Breaker**: Stops hammering PokeAPI while it is down.
    - **Retries**: Transient errors are retried with exponential backoff.
    - **Request Deduplication**: Simultaneous lookups of one resource share
      a single upstream call.
    - **Proxy Cache**: Flattened responses are kept in SQLite with LRU eviction
      when a database is given.

    Args:
        base_url: PokeAPI root, e.g. 'https://pokeapi.co/api/v2'.
        database: Connected Database for the proxy cache, or None to disable it.
        max_concurrent: Upper bound of simultaneous upstream requests.
        max_retries: Attempts per upstream request.
        retry_base_delay: First backoff delay in seconds.
    """

    def __init__(
        self,
        base_url: str = POKEAPI_URL,
        database: Optional[Database] = None,
        max_concurrent: int = MAX_CONCURRENT_API_REQUESTS,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.session: Optional[aiohttp.ClientSession] = None

        # Session creation lock to prevent race conditions during lazy loading
        self._session_lock = asyncio.Lock()

        self._rate_limiter = asyncio.Semaphore(max_concurrent)

        # Proxy cache statistics (in-memory)
        self.cache_hits = 0
        self.cache_misses = 0

        self._breaker = CircuitBreaker(
            name="pokeapi",
            failure_threshold=BREAKER_FAILURE_THRESHOLD,
            recovery_timeout=BREAKER_RECOVERY_TIMEOUT,
            success_threshold=BREAKER_SUCCESS_THRESHOLD,
            expected_exceptions=UPSTREAM_ERRORS,
        )

        self._get_json_with_retry = retry_on_error(
            max_retries=max_retries,
            exceptions=UPSTREAM_ERRORS,
            base_delay=retry_base_delay,
            max_delay=max(RETRY_MAX_DELAY, retry_base_delay),
        )(self._guarded_request)

        # Tracks in-flight requests to prevent duplicate API calls
        self._pending_requests: Dict[str, asyncio.Task] = {}
        self._request_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

        # Background cleanup task
        self._cleanup_task: Optional[asyncio.Task] = None
        self._is_closing = False

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _hash_cache_key(self, key: str) -> str:
        hash_obj = hashlib.new(CACHE_KEY_HASH_ALGORITHM)
        hash_obj.update(key.encode("utf-8"))
        return hash_obj.hexdigest()

    async def _deduplicate_request(
        self, key: str, fetch_func, *args, **kwargs
    ) -> Optional[Any]:
        """
        Deduplicate concurrent requests for the same data.

        This employs a 'Release-then-Await' pattern: the lock is held only
        while creating or retrieving the pending task, never while awaiting
        the network result, so unrelated requests are not serialized.

        Args:
            key: Unique key identifying this request resource.
            fetch_func: Async function to call if no request is pending.

        Returns:
            Result from fetch_func or shared result from a pending request.
        """
        created = False

        async with self._request_locks[key]:
            task = self._pending_requests.get(key)
            if task is not None:
                logger.debug(
                    "Request deduplication: Joining existing request",
                    extra={"key": key[:50]},
                )
            else:
                task = asyncio.create_task(fetch_func(*args, **kwargs))
                self._pending_requests[key] = task
                created = True

        try:
            return await task
        finally:
            if created:
                async with self._request_locks[key]:
                    if self._pending_requests.get(key) is task:
                        del self._pending_requests[key]

    async def get_session(self) -> aiohttp.ClientSession:
        """
        Get or create the pooled aiohttp session.

        Also (re)starts the proxy cache cleanup task when a database is set.
        """
        async with self._session_lock:
            if self.session is None or self.session.closed:
                timeout = aiohttp.ClientTimeout(total=API_REQUEST_TIMEOUT)

                connector = aiohttp.TCPConnector(
                    limit=CONNECTION_POOL_LIMIT,
                    limit_per_host=CONNECTION_POOL_LIMIT_PER_HOST,
                    ttl_dns_cache=300,
                    keepalive_timeout=CONNECTION_KEEPALIVE_TIMEOUT,
                )

                self.session = aiohttp.ClientSession(
                    timeout=timeout,
                    connector=connector,
                    headers={"User-Agent": "PokeMMO-Link/1.0"},
                )

                logger.info(
                    "Created aiohttp session with connection pooling",
                    extra={
                        "total_limit": CONNECTION_POOL_LIMIT,
                        "per_host_limit": CONNECTION_POOL_LIMIT_PER_HOST,
                        "keepalive": CONNECTION_KEEPALIVE_TIMEOUT,
                    },
                )

                if self.database is not None:
                    if self._cleanup_task and not self._cleanup_task.done():
                        self._cleanup_task.cancel()
                        try:
                            await self._cleanup_task
                        except asyncio.CancelledError:
                            pass

                    self._cleanup_task = asyncio.create_task(self._cache_cleanup_loop())
                    logger.info("Started proxy cache cleanup background task")

        return self.session

    async def validate_api_connectivity(self) -> Dict[str, bool]:
        """
        Check once at startup that PokeAPI answers.

        The server keeps running either way; cached data still renders.

        Returns:
            {'pokeapi': bool}
        """
        results = {"pokeapi": False}

        try:
            session = await self.get_session()
            async with asyncio.timeout(API_STARTUP_VALIDATION_TIMEOUT):
                async with session.get(f"{self.base_url}/pokemon/1") as resp:
                    if resp.status == 200:
                        results["pokeapi"] = True
                        logger.info("✅ PokeAPI is reachable")
                    else:
                        logger.warning(f"⚠️ PokeAPI returned status {resp.status}")
        except asyncio.TimeoutError:
            logger.error(
                "❌ PokeAPI connection timed out",
                extra={"timeout_seconds": API_STARTUP_VALIDATION_TIMEOUT},
            )
        except Exception as e:
            logger.error(f"❌ PokeAPI validation failed: {e}")

        if not results["pokeapi"]:
            logger.warning(
                "⚠️ PokeAPI is unreachable. The dashboard will continue with cached data only."
            )

        return results

    async def close(self) -> None:
        """Close the aiohttp session and cancel background tasks."""
        self._is_closing = True

        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        if self.session and not self.session.closed:
            await self.session.close()
            logger.info(
                f"API client session closed (Proxy cache - Hits: {self.cache_hits}, Misses: {self.cache_misses})"
            )
            logger.info("PokeAPI circuit breaker stats", extra=self._breaker.get_stats())

    async def _cache_cleanup_loop(self) -> None:
        """Background task to periodically clean expired proxy cache entries."""
        while not self._is_closing:
            try:
                await asyncio.sleep(CACHE_CLEANUP_INTERVAL)
                deleted = await self.database.delete_expired_proxy_entries(PROXY_CACHE_TIMEOUT)  # type: ignore
                if deleted:
                    logger.debug(
                        "Cleaned expired proxy cache entries",
                        extra={"count": deleted, "timeout_seconds": PROXY_CACHE_TIMEOUT},
                    )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cache cleanup task: {e}")

    async def _get_cached(self, key: str) -> Optional[Any]:
        if self.database is None:
            return None

        data = await self.database.get_proxy_entry(self._hash_cache_key(key), PROXY_CACHE_TIMEOUT)
        if data is not None:
            self.cache_hits += 1
            logger.debug("Proxy cache hit", extra={"cache_key": key[:50]})
        else:
            self.cache_misses += 1
        return data

    async def _set_cache(self, key: str, data: Any) -> None:
        if self.database is None:
            return
        kind = key.partition(":")[0]
        await self.database.put_proxy_entry(self._hash_cache_key(key), kind, data, MAX_PROXY_CACHE_SIZE)

    async def _request_json(self, path: str) -> Optional[Dict[str, Any]]:
        """
        GET one PokeAPI resource.

        Returns:
            The decoded JSON body on 200, None on 404.

        Raises:
            aiohttp.ClientResponseError: On any other status.
        """
        session = await self.get_session()
        url = f"{self.base_url}/{path}"
        logger.debug(f"Fetching from PokeAPI: {url}")

        async with self._rate_limiter:
            async with session.get(url) as resp:
                if resp.status == 200:
                    return await resp.json()
                if resp.status == 404:
                    logger.debug(f"PokeAPI resource not found: {path}")
                    return None

                logger.warning(f"PokeAPI error {resp.status} for {path}")
                # Raise to trigger retry and circuit breaker
                raise aiohttp.ClientResponseError(
                    request_info=resp.request_info,
                    history=resp.history,
                    status=resp.status,
                )

    async def _guarded_request(self, path: str) -> Optional[Dict[str, Any]]:
        return await self._breaker.call(self._request_json, path)

    async def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a resource with retries and breaker protection.

        An open breaker reads as "not found"; exhausted retries raise.
        """
        try:
            return await self._get_json_with_retry(path)
        except CircuitBreakerError as e:
            logger.error(f"PokeAPI circuit breaker open, skipping {path}: {e}")
            return None

    async def resolve_species_slug(self, key: str) -> str:
        """
        Turn a species ResourceKey into a `/pokemon/{slug}` slug.

        Form keys (`id-<species>-form-<n>`) are resolved through the species'
        `varieties` list, where index 0 is the base form. A missing variety or
        a failed species lookup falls back to the bare species id.
        """
        parsed = parse_form_key(key)
        if parsed is None:
            if key.startswith("id-"):
                parts = key.split("-")
                if len(parts) > 1 and parts[1]:
                    logger.warning(f"Malformed form key {key!r}, using species {parts[1]}")
                    return parts[1]
            return key

        species_id, form_index = parsed
        try:
            species = await self._get_json(f"pokemon-species/{species_id}")
        except UPSTREAM_ERRORS as e:
            logger.warning(f"Species lookup for form key {key} failed: {e}")
            return str(species_id)

        varieties = (species or {}).get("varieties") or []
        if form_index < len(varieties):
            name = ((varieties[form_index] or {}).get("pokemon") or {}).get("name")
            if name:
                return name

        logger.warning(
            f"Form {form_index} not found for species {species_id} "
            f"(varieties: {len(varieties)}), falling back to base."
        )
        return str(species_id)

    async def get_species(self, key: str) -> Optional[SpeciesData]:
        """
        Fetch flattened species data for a ResourceKey.

        Args:
            key: Species id, PokeAPI slug or `id-<species>-form-<n>`.

        Returns:
            SpeciesData or None if PokeAPI does not know the species.

        Raises:
            aiohttp.ClientError: Upstream kept failing after retries.
        """
        key = str(key).strip().lower()
        cache_key = f"species:{key}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        return await self._deduplicate_request(
            f"pokeapi:{cache_key}", self._fetch_species, key, cache_key
        )

    async def _fetch_species(self, key: str, cache_key: str) -> Optional[SpeciesData]:
        slug = await self.resolve_species_slug(key)
        pokemon = await self._get_json(f"pokemon/{slug}")
        if pokemon is None:
            return None

        # The species resource is keyed by species id, which differs from the
        # pokemon id for alternate forms.
        species_ref = pokemon.get("species") or {}
        species_id = id_from_resource_url(species_ref.get("url")) or pokemon.get("id")

        gender_rate = GENDERLESS_RATIO
        growth_rate = None
        try:
            species = await self._get_json(f"pokemon-species/{species_id}")
        except UPSTREAM_ERRORS as e:
            logger.warning(f"Failed to fetch species data for {slug}: {e}")
            species = None

        if species:
            if species.get("gender_rate") is not None:
                gender_rate = species["gender_rate"]
            growth_rate = (species.get("growth_rate") or {}).get("name")

        result = flatten_species(pokemon, gender_rate, growth_rate)
        await self._set_cache(cache_key, result)
        logger.info(f"Fetched species {result['name']} for key {key}")
        return result

    async def get_move(self, move_id) -> Optional[MoveData]:
        """Fetch flattened move data, None if unknown upstream."""
        move_id = str(move_id).strip()
        cache_key = f"move:{move_id}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        async def _fetch():
            raw = await self._get_json(f"move/{move_id}")
            if raw is None:
                return None
            result = flatten_move(raw)
            await self._set_cache(cache_key, result)
            return result

        return await self._deduplicate_request(f"pokeapi:{cache_key}", _fetch)

    async def get_ability(self, ability_id) -> Optional[AbilityData]:
        """Fetch flattened ability data, None if unknown upstream."""
        ability_id = str(ability_id).strip()
        cache_key = f"ability:{ability_id}"

        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cached

        async def _fetch():
            raw = await self._get_json(f"ability/{ability_id}")
            if raw is None:
                return None
            result = flatten_ability(raw)
            await self._set_cache(cache_key, result)
            return result

        return await self._deduplicate_request(f"pokeapi:{cache_key}", _fetch)

    async def clear_cache(self) -> None:
        """Clear the proxy cache."""
        if self.database is not None:
            await self.database.clear_proxy_cache()
        self.cache_hits = 0
        self.cache_misses = 0
        logger.info("Proxy cache cleared")

    async def get_cache_stats(self) -> Dict[str, Any]:
        """
        Get proxy cache statistics.

        Returns:
            Hit/miss counters plus table size and access counts when persisted.
        """
        total_requests = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total_requests * 100) if total_requests > 0 else 0

        stats: Dict[str, Any] = {
            "enabled": self.database is not None,
            "max_size": MAX_PROXY_CACHE_SIZE,
            "hits": self.cache_hits,
            "misses": self.cache_misses,
            "hit_rate": f"{hit_rate:.1f}%",
        }
        if self.database is not None:
            stats.update(await self.database.proxy_cache_stats())
        return stats

    def get_deduplication_stats(self) -> DeduplicationStats:
        return {
            "pending_requests": len(self._pending_requests),
            "active_locks": len(self._request_locks),
        }

    def get_circuit_breaker_stats(self) -> Dict[str, dict]:
        return {"pokeapi": self._breaker.get_stats()}
