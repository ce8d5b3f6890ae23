"""
Bulk cache filling for one resource kind.

`BatchFetcher.fetch_missing` is the only way enrichment data gets into a
ResourceCache. Given every key the visible records need, it requests the
ones that are neither cached nor already being fetched, in parallel, and
writes the successful results back in a single persisted batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from config.settings import MAX_CONCURRENT_API_REQUESTS
from utils.helpers import unique_keys
from utils.resource_cache import ResourceCache

logger = logging.getLogger("pokemmo_link.batch_fetcher")

FetchOne = Callable[[str], Awaitable[Optional[Any]]]


@dataclass
class BatchResult:
    """Outcome of one `fetch_missing` call, as lists of keys."""

    fetched: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cached: List[str] = field(default_factory=list)
    joined: List[str] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.fetched) + len(self.failed)


class BatchFetcher:
    """
    Fetches missing keys of one resource kind into its cache.

    Args:
        cache: The ResourceCache to fill.
        fetch_one: Coroutine function returning the flattened payload for a
            key, or None when upstream does not know it.
        max_concurrent: Upper bound of simultaneous `fetch_one` calls.
    """

    def __init__(
        self,
        cache: ResourceCache,
        fetch_one: FetchOne,
        max_concurrent: int = MAX_CONCURRENT_API_REQUESTS,
    ):
        self.cache = cache
        self.fetch_one = fetch_one
        self.kind = cache.kind
        self._semaphore = asyncio.Semaphore(max_concurrent)

        # key -> batch task currently fetching it
        self._pending: Dict[str, asyncio.Task] = {}

    async def fetch_missing(self, keys: Iterable[Any]) -> BatchResult:
        """
        Ensure every key is cached or has been attempted.

        Keys are stringified and deduplicated; empty ones are ignored. Keys
        another call is already fetching are awaited, not requested again.
        The network work runs in its own task, so cancelling the caller
        never leaves keys marked in flight.

        Returns:
            BatchResult describing what happened to each key.
        """
        result = BatchResult()
        missing: List[str] = []
        waiting: Dict[int, asyncio.Task] = {}

        # No awaits until every missing key is marked in flight.
        for key in unique_keys(keys):
            if self.cache.has(key):
                result.cached.append(key)
            elif self.cache.is_in_flight(key):
                result.joined.append(key)
                task = self._pending.get(key)
                if task is not None:
                    waiting[id(task)] = task
            else:
                missing.append(key)

        own_task: Optional[asyncio.Task] = None
        if missing:
            for key in missing:
                self.cache.mark_in_flight(key)
            own_task = asyncio.create_task(self._run_batch(missing))
            for key in missing:
                self._pending[key] = own_task
            waiting[id(own_task)] = own_task

        if not waiting:
            return result

        await asyncio.shield(asyncio.gather(*waiting.values(), return_exceptions=True))

        if own_task is not None:
            fetched, failed = own_task.result()
            result.fetched.extend(fetched)
            result.failed.extend(failed)

        return result

    async def _fetch_key(self, key: str) -> Optional[Any]:
        async with self._semaphore:
            return await self.fetch_one(key)

    async def _run_batch(self, keys: List[str]) -> Tuple[List[str], List[str]]:
        this_task = asyncio.current_task()
        try:
            outcomes = await asyncio.gather(
                *(self._fetch_key(key) for key in keys), return_exceptions=True
            )

            found: Dict[str, Any] = {}
            failed: List[str] = []
            for key, outcome in zip(keys, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(
                        f"Failed to fetch {self.kind} {key}: {outcome!r}",
                        extra={"kind": self.kind, "key": key},
                    )
                    failed.append(key)
                elif outcome is None:
                    logger.debug(f"No upstream {self.kind} for {key}")
                    failed.append(key)
                else:
                    found[key] = outcome

            await self.cache.put_many(found)

            logger.info(
                f"Fetched {len(found)}/{len(keys)} {self.kind} entries",
                extra={"kind": self.kind, "failed": len(failed)},
            )
            return list(found), failed
        finally:
            for key in keys:
                self.cache.clear_in_flight(key)
                if self._pending.get(key) is this_task:
                    del self._pending[key]
