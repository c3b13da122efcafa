"""Short-TTL pull-through cache for read-mostly lookups."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


class ResourceCache:
    """Memoizes fetch results until an absolute expiry.

    With `coalesce=True` concurrent misses on one key share a single in-flight
    fetch; otherwise each miss fetches independently.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        coalesce: bool = True,
    ) -> None:
        self._clock = clock
        self._coalesce = coalesce
        self._entries: dict[str, _Entry] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get_or_fetch(
        self,
        key: str,
        ttl_seconds: float,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Any:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            self._hits += 1
            return entry.value

        self._misses += 1
        if self._coalesce:
            pending = self._inflight.get(key)
            if pending is not None:
                return await asyncio.shield(pending)
            future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
            self._inflight[key] = future
            try:
                value = await fetch()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as error:
                future.set_exception(error)
                # Mark retrieved so an unobserved failure is not reported by the loop.
                future.exception()
                raise
            else:
                self._store(key, value, ttl_seconds)
                future.set_result(value)
                return value
            finally:
                self._inflight.pop(key, None)

        value = await fetch()
        self._store(key, value, ttl_seconds)
        return value

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Evict expired entries; returns how many were removed."""

        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._evictions += len(expired)
        if expired:
            logger.debug("Cache sweep evicted %d entries", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep periodically until cancelled."""

        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "keys": sorted(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "inflight": len(self._inflight),
        }

    def _store(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)
