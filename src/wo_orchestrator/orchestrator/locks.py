"""Per-target mutual exclusion with FIFO hand-off between waiters."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from itertools import count
from typing import Any

logger = logging.getLogger(__name__)

ReleaseFn = Callable[[], None]


@dataclass(slots=True)
class _Grant:
    manager: TargetLockManager
    target_id: str
    holder_id: str
    token: int
    acquired_at: float
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.manager._release(self)


@dataclass(slots=True)
class _Waiter:
    holder_id: str
    future: asyncio.Future[_Grant]
    queued_at: float = field(default_factory=time.monotonic)


class TargetLockManager:
    """Serializes work against one target at a time.

    `acquire` suspends until the target is free and returns an idempotent
    release callback. Release grants the lock directly to the oldest live
    waiter, so ownership never passes through an unlocked state that a late
    caller could grab out of turn.
    """

    def __init__(self) -> None:
        self._holders: dict[str, _Grant] = {}
        self._waiters: dict[str, deque[_Waiter]] = {}
        self._tokens = count(1)
        self._acquired_total = 0
        self._contended_total = 0
        self._forced_total = 0

    async def acquire(self, target_id: str, holder_id: str) -> ReleaseFn:
        """Wait for exclusive access to `target_id` and return its release callback."""

        if target_id not in self._holders:
            grant = self._grant(target_id, holder_id)
            return grant.release

        loop = asyncio.get_running_loop()
        waiter = _Waiter(holder_id=holder_id, future=loop.create_future())
        queue = self._waiters.setdefault(target_id, deque())
        queue.append(waiter)
        self._contended_total += 1
        logger.info(
            "Lock contention on %s: %s waits behind %s (queue=%d)",
            target_id,
            holder_id,
            self._holders[target_id].holder_id,
            len(queue),
        )
        try:
            grant = await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Granted while being cancelled: pass the lock on.
                waiter.future.result().release()
            else:
                self._discard_waiter(target_id, waiter)
            raise
        return grant.release

    @asynccontextmanager
    async def hold(self, target_id: str, holder_id: str) -> AsyncIterator[None]:
        release = await self.acquire(target_id, holder_id)
        try:
            yield
        finally:
            release()

    def is_locked(self, target_id: str) -> bool:
        return target_id in self._holders

    def get_holder(self, target_id: str) -> str | None:
        grant = self._holders.get(target_id)
        return grant.holder_id if grant is not None else None

    def queue_length(self, target_id: str) -> int:
        queue = self._waiters.get(target_id)
        if not queue:
            return 0
        return sum(1 for waiter in queue if not waiter.future.done())

    def locked_targets(self) -> dict[str, str]:
        return {target_id: grant.holder_id for target_id, grant in self._holders.items()}

    def stats(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            "locked_targets": len(self._holders),
            "waiting": sum(self.queue_length(target_id) for target_id in self._waiters),
            "acquired_total": self._acquired_total,
            "contended_total": self._contended_total,
            "forced_releases": self._forced_total,
            "targets": {
                target_id: {
                    "holder": grant.holder_id,
                    "held_seconds": round(now - grant.acquired_at, 3),
                    "waiters": [
                        waiter.holder_id
                        for waiter in self._waiters.get(target_id, ())
                        if not waiter.future.done()
                    ],
                }
                for target_id, grant in self._holders.items()
            },
        }

    def release_all(self) -> int:
        """Force-release every held lock. Unsafe.

        Current holders keep running without exclusion; each target is handed
        to its next waiter. Their own release callbacks become no-ops. Meant
        only for a supervisor clearing targets stalled by abandoned holders.
        """

        grants = list(self._holders.values())
        if grants:
            logger.warning(
                "Force-releasing %d target lock(s): %s",
                len(grants),
                ", ".join(sorted(grant.target_id for grant in grants)),
            )
        for grant in grants:
            self._forced_total += 1
            grant.release()
        return len(grants)

    def _grant(self, target_id: str, holder_id: str) -> _Grant:
        grant = _Grant(
            manager=self,
            target_id=target_id,
            holder_id=holder_id,
            token=next(self._tokens),
            acquired_at=time.monotonic(),
        )
        self._holders[target_id] = grant
        self._acquired_total += 1
        logger.debug("Lock acquired on %s by %s", target_id, holder_id)
        return grant

    def _release(self, grant: _Grant) -> None:
        current = self._holders.get(grant.target_id)
        if current is None or current.token != grant.token:
            return
        del self._holders[grant.target_id]
        logger.debug(
            "Lock released on %s by %s after %.3fs",
            grant.target_id,
            grant.holder_id,
            time.monotonic() - grant.acquired_at,
        )

        queue = self._waiters.get(grant.target_id)
        while queue:
            waiter = queue.popleft()
            if waiter.future.done():
                continue
            next_grant = self._grant(grant.target_id, waiter.holder_id)
            waiter.future.set_result(next_grant)
            logger.info(
                "Lock on %s handed from %s to %s after %.3fs wait",
                grant.target_id,
                grant.holder_id,
                waiter.holder_id,
                time.monotonic() - waiter.queued_at,
            )
            break
        if not queue:
            self._waiters.pop(grant.target_id, None)

    def _discard_waiter(self, target_id: str, waiter: _Waiter) -> None:
        queue = self._waiters.get(target_id)
        if queue is None:
            return
        if waiter in queue:
            queue.remove(waiter)
        if not queue:
            self._waiters.pop(target_id, None)
