"""In-process progress event bus with bounded per-job channels."""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from wo_orchestrator.orchestrator.models import ProgressEvent, ProgressEventType
from wo_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Single-consumer, bounded buffer of one job's progress events.

    The channel closes itself after buffering a terminal event; iteration then
    drains what is left and stops. When the buffer is full the oldest event is
    dropped, never the terminal one.
    """

    def __init__(
        self,
        job_id: str,
        *,
        maxsize: int,
        on_close: Callable[[ProgressChannel], None] | None = None,
    ) -> None:
        if maxsize <= 0:
            raise ValueError("Channel buffer size must be positive.")
        self.job_id = job_id
        self.maxsize = maxsize
        self.dropped = 0
        self._buffer: deque[ProgressEvent] = deque()
        self._ready = asyncio.Event()
        self._closed = False
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) >= self.maxsize:
            self._buffer.popleft()
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()
        if event.event_type.is_terminal:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        if self._on_close is not None:
            self._on_close(self)

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the channel is closed and drained."""

        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class ProgressEventBus:
    """Best-effort, synchronous fan-out of progress events keyed by job id.

    Events without listeners are dropped. After a terminal event every listener
    of that job is removed once the grace delay elapses.
    """

    def __init__(
        self,
        *,
        grace_seconds: float = 5.0,
        channel_buffer_size: int = 64,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.channel_buffer_size = channel_buffer_size
        self._clock = clock
        self._listeners: dict[str, list[Listener]] = {}
        self._last_progress: dict[str, int] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

    def on(self, job_id: str, listener: Listener) -> None:
        self._listeners.setdefault(job_id, []).append(listener)
        logger.debug("Listener added for %s (total=%d)", job_id, self.listener_count(job_id))

    def off(self, job_id: str, listener: Listener) -> bool:
        listeners = self._listeners.get(job_id)
        if not listeners or listener not in listeners:
            return False
        listeners.remove(listener)
        if not listeners:
            del self._listeners[job_id]
        return True

    def subscribe(self, job_id: str, *, maxsize: int | None = None) -> ProgressChannel:
        """Open a channel receiving this job's events until its terminal event."""

        channel = ProgressChannel(
            job_id,
            maxsize=maxsize or self.channel_buffer_size,
            on_close=lambda closed: self.off(job_id, closed.push),
        )
        self.on(job_id, channel.push)
        return channel

    def publish(
        self,
        job_id: str,
        event_type: ProgressEventType,
        progress: int,
        *,
        message: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        return self.emit(
            job_id,
            ProgressEvent(
                job_id=job_id,
                event_type=event_type,
                progress=progress,
                message=message,
                metadata=metadata or {},
            ),
        )

    def emit(self, job_id: str, event: ProgressEvent) -> ProgressEvent:
        """Deliver `event` to current listeners and return the event as delivered.

        Progress is clamped to 0-100 and never decreases for one job; a
        completed event always reports 100.
        """

        progress = min(100, max(0, int(event.progress)))
        progress = max(progress, self._last_progress.get(job_id, 0))
        if event.event_type == ProgressEventType.COMPLETED:
            progress = 100
        delivered = ProgressEvent(
            job_id=job_id,
            event_type=event.event_type,
            progress=progress,
            message=event.message,
            metadata=dict(event.metadata),
            emitted_at=event.emitted_at or self._clock(),
        )

        terminal = event.event_type.is_terminal
        if terminal:
            self._last_progress.pop(job_id, None)
        else:
            self._last_progress[job_id] = progress

        for listener in list(self._listeners.get(job_id, ())):
            try:
                listener(delivered)
            except Exception:  # noqa: BLE001
                logger.exception("Progress listener failed for %s", job_id)

        if terminal:
            self._schedule_cleanup(job_id)
        return delivered

    def remove_all_listeners(self, job_id: str) -> int:
        handle = self._cleanup_handles.pop(job_id, None)
        if handle is not None:
            handle.cancel()
        listeners = self._listeners.pop(job_id, [])
        for listener in listeners:
            channel = getattr(listener, "__self__", None)
            if isinstance(channel, ProgressChannel):
                channel.close()
        if listeners:
            logger.debug("Removed %d listener(s) for %s", len(listeners), job_id)
        return len(listeners)

    def listener_count(self, job_id: str) -> int:
        return len(self._listeners.get(job_id, ()))

    def active_jobs(self) -> list[str]:
        return sorted(self._listeners)

    def close(self) -> None:
        """Drop every listener and pending cleanup timer."""

        for job_id in list(self._listeners):
            self.remove_all_listeners(job_id)
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
        self._last_progress.clear()

    def _schedule_cleanup(self, job_id: str) -> None:
        if job_id not in self._listeners:
            return
        previous = self._cleanup_handles.pop(job_id, None)
        if previous is not None:
            previous.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.remove_all_listeners(job_id)
            return
        self._cleanup_handles[job_id] = loop.call_later(
            self.grace_seconds,
            self.remove_all_listeners,
            job_id,
        )


def format_sse(event: ProgressEvent) -> str:
    """Render one event as a server-sent-events frame."""

    payload = json.dumps(event.to_payload(), ensure_ascii=False, sort_keys=True, default=str)
    return f"event: {event.event_type.value}\ndata: {payload}\n\n"
