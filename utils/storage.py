"""
Key-value persistence backends for the enrichment resource caches.

Every backend stores one mapping of `cache_key -> {'data', 'timestamp'}` per
resource kind and exposes the same three async operations:

- `load(kind)`: everything persisted for a kind (expiry is the caller's job).
- `save(kind, entries)`: upsert the given entries.
- `clear(kind)`: forget everything for a kind.

Backends raise on I/O failure. `ResourceCache` is the layer that logs and
degrades, so a broken store never blocks the in-memory fast path.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from utils.api_models import CacheEntry
from utils.constants import CACHE_STORAGE_KEYS
from utils.database import Database

logger = logging.getLogger("pokemmo_link.storage")


def write_json_atomic(path: Path, data: Any, indent: Optional[int] = None) -> None:
    """
    Write `data` as JSON to `path` through a uniquely named temp file.

    Readers see either the old document or the new one, never a partial
    write, and concurrent writers never share a temp file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    tmp_path = Path(tmp.name)
    try:
        with tmp:
            json.dump(data, tmp, indent=indent)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class CacheStore:
    """Interface shared by all resource cache backends."""

    name = "abstract"

    async def load(self, kind: str) -> Dict[str, CacheEntry]:
        raise NotImplementedError

    async def save(self, kind: str, entries: Dict[str, CacheEntry]) -> None:
        raise NotImplementedError

    async def clear(self, kind: str) -> None:
        raise NotImplementedError


class MemoryStore(CacheStore):
    """Process-local store. Nothing survives a restart."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Dict[str, CacheEntry]] = {}

    async def load(self, kind: str) -> Dict[str, CacheEntry]:
        return {key: dict(entry) for key, entry in self._data.get(kind, {}).items()}  # type: ignore

    async def save(self, kind: str, entries: Dict[str, CacheEntry]) -> None:
        bucket = self._data.setdefault(kind, {})
        for key, entry in entries.items():
            bucket[key] = dict(entry)  # type: ignore

    async def clear(self, kind: str) -> None:
        self._data.pop(kind, None)


class JsonFileStore(CacheStore):
    """
    One JSON document per resource kind inside a directory.

    File names are versioned (see CACHE_STORAGE_KEYS) so a shape change can be
    rolled out by bumping the version instead of migrating old files.
    Writes go to a temporary file first and are swapped in atomically. The
    read-merge-write of a save holds a per-file lock, so overlapping saves
    for one kind never drop each other's entries.
    """

    name = "json"

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._locks: Dict[Path, asyncio.Lock] = {}

    def path_for(self, kind: str) -> Path:
        storage_key = CACHE_STORAGE_KEYS.get(kind, f"pokemmo-link-{kind}-cache")
        return self.directory / f"{storage_key}.json"

    def _lock_for(self, path: Path) -> asyncio.Lock:
        return self._locks.setdefault(path, asyncio.Lock())

    async def load(self, kind: str) -> Dict[str, CacheEntry]:
        return await asyncio.to_thread(self._read, self.path_for(kind))

    async def save(self, kind: str, entries: Dict[str, CacheEntry]) -> None:
        path = self.path_for(kind)
        async with self._lock_for(path):
            await asyncio.to_thread(self._merge_and_write, path, dict(entries))

    async def clear(self, kind: str) -> None:
        path = self.path_for(kind)
        async with self._lock_for(path):
            await asyncio.to_thread(path.unlink, True)

    @staticmethod
    def _read(path: Path) -> Dict[str, CacheEntry]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _merge_and_write(self, path: Path, entries: Dict[str, CacheEntry]) -> None:
        current = self._read(path)
        current.update(entries)
        write_json_atomic(path, current)


class SQLiteStore(CacheStore):
    """Stores entries in the `resource_cache` table of the app database."""

    name = "sqlite"

    def __init__(self, database: Database):
        self.database = database

    async def load(self, kind: str) -> Dict[str, CacheEntry]:
        return await self.database.load_resource_entries(kind)  # type: ignore

    async def save(self, kind: str, entries: Dict[str, CacheEntry]) -> None:
        await self.database.save_resource_entries(kind, entries)  # type: ignore

    async def clear(self, kind: str) -> None:
        await self.database.clear_resource_entries(kind)


def create_store(backend: str, *, database: Database = None, directory: Path = None) -> CacheStore:
    """
    Build the configured cache backend.

    Args:
        backend: 'sqlite', 'json' or 'memory'.
        database: Connected Database, required for 'sqlite'.
        directory: Target directory, required for 'json'.

    Raises:
        ValueError: On an unknown backend or a missing dependency.
    """
    if backend == "sqlite":
        if database is None:
            raise ValueError("The sqlite cache backend needs a connected database")
        store: CacheStore = SQLiteStore(database)
    elif backend == "json":
        if directory is None:
            raise ValueError("The json cache backend needs a directory")
        store = JsonFileStore(directory)
    elif backend == "memory":
        store = MemoryStore()
    else:
        raise ValueError(f"Unknown resource cache backend: {backend}")

    logger.info("Resource cache backend ready", extra={"backend": store.name})
    return store
