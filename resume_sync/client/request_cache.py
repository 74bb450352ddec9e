"""Response cache and in-flight de-duplication for the request client."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


def make_request_key(method: str, url: str, params: Any = None, data: Any = None) -> str:
    """Build the dedup/cache key ``METHOD:url:params:data``.

    Params and body are serialized with sorted keys so that equal mappings
    always produce the same key.
    """
    return ":".join((
        method.upper(),
        url,
        json.dumps(params, sort_keys=True, default=str),
        json.dumps(data, sort_keys=True, default=str),
    ))


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float


class RequestCache:
    """
    TTL cache of settled responses plus a table of in-flight calls.

    Callers look up :meth:`get` first and fall back to :meth:`dedupe`.
    Concurrent callers with the same key share one task. The task removes
    itself from the table when it settles, whether it succeeded or failed.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._generation = 0
        self._hits = 0
        self._misses = 0
        self._shared = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the fresh entry for ``key``; stale entries are dropped."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def set(self, key: str, payload: Any) -> None:
        self._entries[key] = CacheEntry(key=key, payload=payload, stored_at=self._clock())

    def invalidate(self, pattern: str) -> int:
        """Drop every entry whose key contains ``pattern``."""
        doomed = [key for key in self._entries if pattern in key]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("cache_invalidated pattern=%s count=%s", pattern, len(doomed))
        return len(doomed)

    def clear(self) -> None:
        """Drop all entries and forget in-flight calls.

        Calls still running finish for their awaiting callers, but their
        results are not written back.
        """
        self._entries.clear()
        self._in_flight.clear()
        self._generation += 1

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._entries)

    async def dedupe(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        cacheable: bool = True,
    ) -> Any:
        """
        Run ``factory`` at most once per key at a time.

        Args:
            key: Request key from :func:`make_request_key`
            factory: Zero-argument coroutine function performing the call
            cacheable: Store a successful result in the TTL cache

        Returns:
            The (possibly shared) result of ``factory``
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, factory, cacheable, self._generation))
            task.add_done_callback(_consume_result)
            self._in_flight[key] = task
        else:
            self._shared += 1
            logger.debug("request_deduplicated key=%s", key)

        # A cancelled caller must not cancel the call for everyone else.
        return await asyncio.shield(task)

    async def _run(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        cacheable: bool,
        generation: int,
    ) -> Any:
        try:
            result = await factory()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
        if cacheable and generation == self._generation:
            self.set(key, result)
        return result

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "entries": len(self._entries),
            "in_flight": len(self._in_flight),
            "hits": self._hits,
            "misses": self._misses,
            "shared": self._shared,
            "hit_rate": self._hits / total if total else 0.0,
        }


def _consume_result(task: asyncio.Task) -> None:
    # Retrieve the outcome so an error nobody awaited is not reported as unhandled.
    if not task.cancelled():
        task.exception()
