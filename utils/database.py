"""
Database module for persistent storage using SQLite.

Handles the upstream proxy response cache and the durable backing of the
enrichment resource caches. Container dumps are NOT stored here; they live
as JSON files in the data directory.
"""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from config.settings import DB_CONNECTION_STRING

logger = logging.getLogger("pokemmo_link.database")

SQLITE_PREFIX = "sqlite:///"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS proxy_cache (
        cache_key TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        data TEXT NOT NULL,
        created_at REAL NOT NULL,
        last_accessed REAL NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_proxy_cache_lru ON proxy_cache(last_accessed)",
    "CREATE INDEX IF NOT EXISTS idx_proxy_cache_created ON proxy_cache(created_at)",
    """
    CREATE TABLE IF NOT EXISTS resource_cache (
        kind TEXT NOT NULL,
        cache_key TEXT NOT NULL,
        data TEXT NOT NULL,
        fetched_at REAL NOT NULL,
        PRIMARY KEY (kind, cache_key)
    )
    """,
)


class Database:
    """
    Async SQLite store shared by the PokeAPI client and the resource caches.

    Schema:
    - **proxy_cache**: Flattened PokeAPI responses keyed by a hashed request
      key, tagged with their resource kind. Rows older than the proxy timeout
      are invisible to reads and removed by the client's cleanup task.
    - **resource_cache**: Durable copy of the enrichment caches, one row per
      (kind, cache_key).

    Proxy cache methods log and degrade (a broken cache must never fail a
    lookup). Resource cache methods raise; `ResourceCache` decides how to
    degrade.

    Instances are created explicitly by the application and injected where
    needed; there is no module-level singleton.
    """

    def __init__(self, connection_string: str = DB_CONNECTION_STRING):
        if not connection_string.startswith(SQLITE_PREFIX):
            raise ValueError(
                f"Unsupported database connection string: {connection_string!r}. "
                f"Only '{SQLITE_PREFIX}<path>' is supported."
            )

        self.connection_string = connection_string
        self.db_path = connection_string[len(SQLITE_PREFIX):]
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the connection and create missing tables."""
        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        async with self._lock:
            for statement in SCHEMA:
                await self._conn.execute(statement)
            await self._conn.commit()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("Database connection closed")

    async def _fetchall(self, sql: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params)  # type: ignore
        return list(await cursor.fetchall())

    async def _write(self, sql: str, params: Tuple = ()) -> int:
        cursor = await self._conn.execute(sql, params)  # type: ignore
        await self._conn.commit()  # type: ignore
        return cursor.rowcount

    # ==================== PROXY CACHE ====================

    async def get_proxy_entry(self, cache_key: str, max_age: float) -> Optional[Any]:
        """
        Return a cached proxy response younger than `max_age` seconds.

        A hit bumps the row's LRU position. Expired rows are treated as
        missing; deleting them is the cleanup task's job.
        """
        now = time.time()
        try:
            async with self._lock:
                rows = await self._fetchall(
                    "SELECT data FROM proxy_cache WHERE cache_key = ? AND created_at > ?",
                    (cache_key, now - max_age),
                )
                if not rows:
                    return None

                await self._write(
                    "UPDATE proxy_cache SET last_accessed = ?, access_count = access_count + 1 "
                    "WHERE cache_key = ?",
                    (now, cache_key),
                )
            return json.loads(rows[0]["data"])

        except Exception as e:
            logger.error(f"Error reading proxy cache: {e}", exc_info=True)
            return None

    async def put_proxy_entry(self, cache_key: str, kind: str, data: Any, max_size: int) -> bool:
        """
        Store a proxy response, evicting least recently used rows beyond `max_size`.

        Returns:
            True if the row was written.
        """
        now = time.time()
        try:
            async with self._lock:
                await self._conn.execute(  # type: ignore
                    """
                    INSERT INTO proxy_cache (cache_key, kind, data, created_at, last_accessed)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(cache_key) DO UPDATE SET
                        data = excluded.data,
                        created_at = excluded.created_at,
                        last_accessed = excluded.last_accessed
                    """,
                    (cache_key, kind, json.dumps(data), now, now),
                )
                evicted = await self._write(
                    """
                    DELETE FROM proxy_cache WHERE cache_key IN (
                        SELECT cache_key FROM proxy_cache
                        ORDER BY last_accessed DESC
                        LIMIT -1 OFFSET ?
                    )
                    """,
                    (max_size,),
                )
            if evicted > 0:
                logger.debug(f"Evicted {evicted} least recently used proxy cache rows")
            return True

        except Exception as e:
            logger.error(f"Error writing proxy cache: {e}", exc_info=True)
            return False

    async def clear_proxy_cache(self) -> bool:
        try:
            async with self._lock:
                await self._write("DELETE FROM proxy_cache")
            return True
        except Exception as e:
            logger.error(f"Error clearing proxy cache: {e}", exc_info=True)
            return False

    async def proxy_cache_stats(self) -> Dict[str, Any]:
        """
        Row counts of the proxy cache.

        Returns:
            {'size': int, 'by_kind': {kind: count}, 'total_accesses': int}
        """
        try:
            async with self._lock:
                rows = await self._fetchall(
                    "SELECT kind, COUNT(*) AS size, SUM(access_count) AS accesses "
                    "FROM proxy_cache GROUP BY kind"
                )
        except Exception as e:
            logger.error(f"Error reading proxy cache stats: {e}", exc_info=True)
            rows = []

        return {
            "size": sum(row["size"] for row in rows),
            "by_kind": {row["kind"]: row["size"] for row in rows},
            "total_accesses": sum(row["accesses"] or 0 for row in rows),
        }

    async def delete_expired_proxy_entries(self, max_age: float) -> int:
        """Remove proxy rows older than `max_age` seconds. Returns the count."""
        try:
            async with self._lock:
                return await self._write(
                    "DELETE FROM proxy_cache WHERE created_at <= ?",
                    (time.time() - max_age,),
                )
        except Exception as e:
            logger.error(f"Error purging expired proxy cache rows: {e}", exc_info=True)
            return 0

    # ==================== RESOURCE CACHE ====================

    async def load_resource_entries(self, kind: str) -> Dict[str, Dict[str, Any]]:
        """
        Load every persisted entry of one resource kind.

        Returns:
            Mapping of cache key to {'data': ..., 'timestamp': ...}.
        """
        async with self._lock:
            rows = await self._fetchall(
                "SELECT cache_key, data, fetched_at FROM resource_cache WHERE kind = ?",
                (kind,),
            )

        return {
            row["cache_key"]: {"data": json.loads(row["data"]), "timestamp": row["fetched_at"]}
            for row in rows
        }

    async def save_resource_entries(self, kind: str, entries: Dict[str, Dict[str, Any]]) -> None:
        """Upsert entries of one resource kind in a single transaction."""
        rows: Iterable[Tuple] = [
            (kind, key, json.dumps(entry["data"]), entry["timestamp"])
            for key, entry in entries.items()
        ]
        async with self._lock:
            await self._conn.executemany(  # type: ignore
                """
                INSERT INTO resource_cache (kind, cache_key, data, fetched_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, cache_key) DO UPDATE SET
                    data = excluded.data,
                    fetched_at = excluded.fetched_at
                """,
                rows,
            )
            await self._conn.commit()  # type: ignore

    async def clear_resource_entries(self, kind: str) -> None:
        async with self._lock:
            await self._write("DELETE FROM resource_cache WHERE kind = ?", (kind,))


async def open_database(connection_string: str = DB_CONNECTION_STRING) -> Database:
    """
    Create and connect a Database.

    Raises:
        ValueError: If the connection string is not a sqlite one.
    """
    instance = Database(connection_string)
    await instance.connect()
    return instance
