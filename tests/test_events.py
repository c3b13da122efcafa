from __future__ import annotations

import asyncio
import json

import allure

from wo_orchestrator.orchestrator.events import ProgressChannel, ProgressEventBus, format_sse
from wo_orchestrator.orchestrator.models import ProgressEvent, ProgressEventType

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Progress Events"),
]


def test_events_without_listeners_are_dropped() -> None:
    bus = ProgressEventBus(grace_seconds=0.01)

    delivered = bus.publish("J1", ProgressEventType.PROGRESS, 10)

    assert delivered.progress == 10
    assert bus.listener_count("J1") == 0


def test_listeners_are_removed_after_terminal_event_grace() -> None:
    async def scenario() -> tuple[int, int, list[ProgressEventType]]:
        bus = ProgressEventBus(grace_seconds=0.01)
        received: list[ProgressEventType] = []
        bus.on("J1", lambda event: received.append(event.event_type))
        bus.on("J1", lambda event: None)

        bus.publish("J1", ProgressEventType.STARTED, 0)
        bus.publish("J1", ProgressEventType.COMPLETED, 100)
        during_grace = bus.listener_count("J1")
        await asyncio.sleep(0.05)
        after_grace = bus.listener_count("J1")

        bus.publish("J1", ProgressEventType.PROGRESS, 50)
        return during_grace, after_grace, received

    during_grace, after_grace, received = asyncio.run(scenario())

    assert during_grace == 2
    assert after_grace == 0
    assert received == [ProgressEventType.STARTED, ProgressEventType.COMPLETED]


def test_terminal_event_outside_event_loop_cleans_up_immediately() -> None:
    bus = ProgressEventBus(grace_seconds=5.0)
    bus.on("J1", lambda event: None)

    bus.publish("J1", ProgressEventType.FAILED, 40)

    assert bus.listener_count("J1") == 0
    assert bus.active_jobs() == []


def test_progress_is_clamped_and_monotonic() -> None:
    bus = ProgressEventBus()
    seen: list[int] = []
    bus.on("J1", lambda event: seen.append(event.progress))

    bus.publish("J1", ProgressEventType.PROGRESS, 40)
    bus.publish("J1", ProgressEventType.PROGRESS, 20)
    bus.publish("J1", ProgressEventType.PROGRESS, 140)
    bus.publish("J1", ProgressEventType.PROGRESS, -5)

    assert seen == [40, 40, 100, 100]


def test_completed_event_always_reports_full_progress() -> None:
    bus = ProgressEventBus()
    seen: list[int] = []
    bus.on("J1", lambda event: seen.append(event.progress))

    bus.publish("J1", ProgressEventType.COMPLETED, 30)

    assert seen == [100]


def test_failing_listener_does_not_block_other_listeners() -> None:
    bus = ProgressEventBus()
    seen: list[str] = []

    def broken(event: ProgressEvent) -> None:
        raise RuntimeError("listener bug")

    bus.on("J1", broken)
    bus.on("J1", lambda event: seen.append(event.message))

    bus.publish("J1", ProgressEventType.PROGRESS, 5, message="still delivered")

    assert seen == ["still delivered"]


def test_off_removes_single_listener() -> None:
    bus = ProgressEventBus()
    calls: list[int] = []

    def listener(event: ProgressEvent) -> None:
        calls.append(event.progress)

    bus.on("J1", listener)
    assert bus.off("J1", listener)
    assert not bus.off("J1", listener)

    bus.publish("J1", ProgressEventType.PROGRESS, 10)
    assert calls == []


def test_channel_drains_until_terminal_event() -> None:
    async def scenario() -> tuple[list[str], bool, int]:
        bus = ProgressEventBus(grace_seconds=0.01)
        channel = bus.subscribe("J1")

        async def consume() -> list[str]:
            return [event.event_type.value async for event in channel]

        consumer = asyncio.create_task(consume())
        bus.publish("J1", ProgressEventType.STARTED, 0)
        await asyncio.sleep(0)
        bus.publish("J1", ProgressEventType.PROGRESS, 50)
        bus.publish("J1", ProgressEventType.COMPLETED, 100)
        events = await asyncio.wait_for(consumer, timeout=1)
        return events, channel.closed, bus.listener_count("J1")

    events, closed, listeners = asyncio.run(scenario())

    assert events == ["started", "progress", "completed"]
    assert closed
    assert listeners == 0


def test_channel_buffer_drops_oldest_events_when_full() -> None:
    async def scenario() -> tuple[list[int], int]:
        channel = ProgressChannel("J1", maxsize=2)
        for progress in (10, 20, 30):
            channel.push(
                ProgressEvent(
                    job_id="J1",
                    event_type=ProgressEventType.PROGRESS,
                    progress=progress,
                ),
            )
        channel.push(ProgressEvent(job_id="J1", event_type=ProgressEventType.FAILED, progress=30))
        return [event.progress async for event in channel], channel.dropped

    progresses, dropped = asyncio.run(scenario())

    assert progresses == [30, 30]
    assert dropped == 2


def test_bus_close_closes_open_channels() -> None:
    async def scenario() -> ProgressEvent | None:
        bus = ProgressEventBus()
        channel = bus.subscribe("J1")
        bus.close()
        return await channel.get()

    assert asyncio.run(scenario()) is None


def test_format_sse_renders_event_frame() -> None:
    bus = ProgressEventBus()
    event = bus.publish("J1", ProgressEventType.PROGRESS, 30, message="Routed", metadata={"a": 1})

    frame = format_sse(event)

    assert frame.startswith("event: progress\ndata: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame.split("data: ", 1)[1])
    assert payload["job_id"] == "J1"
    assert payload["progress"] == 30
    assert payload["metadata"] == {"a": 1}
    assert payload["emitted_at"] is not None
