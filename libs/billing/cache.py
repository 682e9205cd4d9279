"""Read-through query cache with explicit invalidation.

Entries are keyed by resource identity (for example ``("payment-methods",)``)
and live until :meth:`QueryCache.invalidate` is called or their optional
``stale_after`` expires. Concurrent reads of the same key share a single
fetch. A fetch that completes after its key was invalidated still answers its
caller but is never written back to the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    version: int
    fetched_at: float


class QueryCache:
    def __init__(
        self,
        *,
        stale_after: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = stale_after
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._versions: Dict[CacheKey, int] = {}
        self._inflight: Dict[CacheKey, Tuple[int, asyncio.Task]] = {}

    def version(self, key: CacheKey) -> int:
        return self._versions.get(key, 0)

    def peek(self, key: CacheKey) -> Any | None:
        """Return the cached value for ``key`` without fetching."""

        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry.value

    def _is_fresh(self, entry: CacheEntry) -> bool:
        if self._stale_after is None:
            return True
        return self._clock() - entry.fetched_at < self._stale_after

    async def get_or_fetch(self, key: CacheKey, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            return entry.value

        version = self.version(key)
        inflight = self._inflight.get(key)
        if inflight is None or inflight[0] != version:
            task = asyncio.ensure_future(fetcher())
            inflight = (version, task)
            self._inflight[key] = inflight
        else:
            logger.debug("Joining in-flight fetch for %s", key)

        started_version, task = inflight
        try:
            value = await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is inflight and task.done():
                del self._inflight[key]

        if self.version(key) == started_version:
            self._entries[key] = CacheEntry(value=value, version=started_version, fetched_at=self._clock())
        else:
            logger.debug("Discarding result for %s fetched before invalidation", key)
        return value

    def invalidate(self, key: CacheKey) -> None:
        self._versions[key] = self.version(key) + 1
        self._entries.pop(key, None)
        logger.debug("Invalidated %s (version %s)", key, self._versions[key])

    def clear(self) -> None:
        """Forget every entry, for example when the user session ends."""

        for key in set(self._entries) | set(self._inflight):
            self.invalidate(key)


__all__ = ["CacheEntry", "CacheKey", "QueryCache"]
