"""
Durable, deduplicated, TTL-bounded memoization of PokeAPI lookups.

One `ResourceCache` exists per resource kind (species, move, ability). Reads
are synchronous and never trigger a fetch; `BatchFetcher` is the only writer
during normal operation. The in-flight set lets overlapping consumers agree
on who fetches a key.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set

from config.settings import CACHE_TTL
from utils.api_models import CacheEntry, CacheStats
from utils.constants import RESOURCE_KINDS
from utils.storage import CacheStore

logger = logging.getLogger("pokemmo_link.resource_cache")


class ResourceCache:
    """
    Memoized store for a single resource kind.

    Entries older than the TTL are dropped when the cache is hydrated from
    its store; they are not actively evicted afterwards. Storage errors are
    logged and swallowed: a failed load means an empty cache, a failed save
    means the entry only lives in memory for this session.

    Attributes:
        kind: Resource kind this cache holds.
        ttl: Entry lifetime in seconds.
    """

    def __init__(
        self,
        kind: str,
        store: CacheStore,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.kind = kind
        self.ttl = ttl
        self._store = store
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Set[str] = set()
        self._initialized = False
        self._init_lock = asyncio.Lock()

        self.hits = 0
        self.misses = 0

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """
        Hydrate from the store exactly once.

        Safe to call repeatedly and concurrently; only the first call loads.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            try:
                stored = await self._store.load(self.kind)
            except Exception as e:
                logger.error(
                    f"Failed to load {self.kind} cache, starting empty: {e}",
                    exc_info=True,
                )
                stored = {}

            now = self._clock()
            kept = 0
            for key, entry in stored.items():
                timestamp = entry.get("timestamp") if isinstance(entry, dict) else None
                if timestamp and now - timestamp < self.ttl and key not in self._entries:
                    self._entries[key] = {"data": entry["data"], "timestamp": timestamp}
                    kept += 1

            self._initialized = True
            logger.info(
                "Resource cache initialized",
                extra={
                    "kind": self.kind,
                    "loaded": kept,
                    "expired": len(stored) - kept,
                },
            )

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for `key` without fetching anything."""
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def get_data(self, key: str) -> Optional[Any]:
        entry = self.get(key)
        return entry["data"] if entry else None

    def has(self, key: str) -> bool:
        return key in self._entries

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def mark_in_flight(self, key: str) -> None:
        self._in_flight.add(key)

    def clear_in_flight(self, key: str) -> None:
        self._in_flight.discard(key)

    def data_map(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """
        Snapshot of cached payloads keyed by resource key.

        Args:
            keys: Restrict the snapshot to these keys; all entries when None.
        """
        if keys is None:
            return {key: entry["data"] for key, entry in self._entries.items()}
        return {key: self._entries[key]["data"] for key in keys if key in self._entries}

    async def put(self, key: str, data: Any) -> None:
        """Store one entry stamped with the current time and persist it."""
        await self.put_many({key: data})

    async def put_many(self, items: Dict[str, Any]) -> None:
        """
        Store several entries and persist them in one write.

        Persisting is best-effort: failures are logged, never raised.
        """
        if not items:
            return

        now = self._clock()
        fresh: Dict[str, CacheEntry] = {}
        for key, data in items.items():
            entry: CacheEntry = {"data": data, "timestamp": now}
            self._entries[key] = entry
            fresh[key] = entry

        try:
            await self._store.save(self.kind, fresh)
        except Exception as e:
            logger.warning(
                f"Could not persist {self.kind} cache, keeping entries in memory: {e}",
                extra={"kind": self.kind, "count": len(fresh)},
            )

    async def clear(self) -> None:
        """Wipe memory and durable storage for this kind (manual reset)."""
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        try:
            await self._store.clear(self.kind)
        except Exception as e:
            logger.warning(f"Could not clear persisted {self.kind} cache: {e}")
        logger.info("Resource cache cleared", extra={"kind": self.kind})

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> CacheStats:
        """
        Get cache statistics.

        Returns:
            CacheStats object containing hit rates and counts.
        """
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0

        return {
            "kind": self.kind,
            "size": len(self._entries),
            "in_flight": len(self._in_flight),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": f"{hit_rate:.1f}%",
        }


class ResourceCaches:
    """
    The shared cache service: one ResourceCache per resource kind.

    Created once at application start and injected into the fetchers,
    the enricher and the admin routes.
    """

    def __init__(self, store: CacheStore, ttl: float = CACHE_TTL, clock: Callable[[], float] = time.time):
        self.store = store
        self._caches = {kind: ResourceCache(kind, store, ttl, clock) for kind in RESOURCE_KINDS}

    def __getitem__(self, kind: str) -> ResourceCache:
        return self._caches[kind]

    @property
    def species(self) -> ResourceCache:
        return self._caches["species"]

    @property
    def moves(self) -> ResourceCache:
        return self._caches["move"]

    @property
    def abilities(self) -> ResourceCache:
        return self._caches["ability"]

    async def init_all(self) -> None:
        await asyncio.gather(*(cache.init() for cache in self._caches.values()))

    async def clear_all(self) -> None:
        for cache in self._caches.values():
            await cache.clear()

    def get_stats(self) -> Dict[str, CacheStats]:
        return {kind: cache.get_stats() for kind, cache in self._caches.items()}
