from __future__ import annotations

import asyncio

import allure
import pytest

from wo_orchestrator.orchestrator.cache import ResourceCache
from wo_orchestrator.orchestrator.models import AgentDescriptor
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.orchestrator.roster import AgentRoster

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Resource Cache"),
]


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _counting_fetch(calls: list[int], value: str = "value", delay: float = 0.0):
    async def fetch() -> str:
        calls.append(1)
        if delay:
            await asyncio.sleep(delay)
        return f"{value}-{len(calls)}"

    return fetch


def test_hit_within_ttl_and_refetch_after_expiry() -> None:
    clock = _FakeClock()
    cache = ResourceCache(clock=clock)
    calls: list[int] = []

    async def scenario() -> list[str]:
        values = [await cache.get_or_fetch("k", 10, _counting_fetch(calls))]
        clock.now += 5
        values.append(await cache.get_or_fetch("k", 10, _counting_fetch(calls)))
        clock.now += 6
        values.append(await cache.get_or_fetch("k", 10, _counting_fetch(calls)))
        return values

    assert asyncio.run(scenario()) == ["value-1", "value-1", "value-2"]
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 2


def test_invalidate_forces_refetch() -> None:
    cache = ResourceCache()
    calls: list[int] = []

    async def scenario() -> list[str]:
        first = await cache.get_or_fetch("k", 60, _counting_fetch(calls))
        assert cache.invalidate("k")
        assert not cache.invalidate("k")
        second = await cache.get_or_fetch("k", 60, _counting_fetch(calls))
        return [first, second]

    assert asyncio.run(scenario()) == ["value-1", "value-2"]


def test_sweep_evicts_only_expired_entries() -> None:
    clock = _FakeClock()
    cache = ResourceCache(clock=clock)
    calls: list[int] = []

    async def scenario() -> None:
        await cache.get_or_fetch("short", 1, _counting_fetch(calls))
        await cache.get_or_fetch("long", 100, _counting_fetch(calls))

    asyncio.run(scenario())
    clock.now += 2

    assert cache.sweep() == 1
    assert cache.stats()["keys"] == ["long"]
    assert cache.stats()["evictions"] == 1


def test_concurrent_misses_share_one_fetch_when_coalescing() -> None:
    cache = ResourceCache(coalesce=True)
    calls: list[int] = []

    async def scenario() -> list[str]:
        fetch = _counting_fetch(calls, delay=0.01)
        return await asyncio.gather(*(cache.get_or_fetch("k", 60, fetch) for _ in range(5)))

    values = asyncio.run(scenario())

    assert len(calls) == 1
    assert set(values) == {"value-1"}


def test_concurrent_misses_fetch_independently_without_coalescing() -> None:
    cache = ResourceCache(coalesce=False)
    calls: list[int] = []

    async def scenario() -> None:
        fetch = _counting_fetch(calls, delay=0.01)
        await asyncio.gather(*(cache.get_or_fetch("k", 60, fetch) for _ in range(3)))

    asyncio.run(scenario())

    assert len(calls) == 3


def test_failed_fetch_propagates_to_all_waiters_and_is_not_cached() -> None:
    cache = ResourceCache(coalesce=True)
    calls: list[int] = []

    async def failing() -> str:
        calls.append(1)
        await asyncio.sleep(0.01)
        raise ConnectionError("store unavailable")

    async def scenario() -> list[BaseException | str]:
        return await asyncio.gather(
            cache.get_or_fetch("k", 60, failing),
            cache.get_or_fetch("k", 60, failing),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert len(calls) == 1
    assert all(isinstance(result, ConnectionError) for result in results)
    assert cache.stats()["size"] == 0
    assert cache.stats()["inflight"] == 0


def test_sweeper_runs_until_cancelled() -> None:
    clock = _FakeClock()
    cache = ResourceCache(clock=clock)
    calls: list[int] = []

    async def scenario() -> int:
        await cache.get_or_fetch("k", 1, _counting_fetch(calls))
        clock.now += 5
        sweeper = asyncio.create_task(cache.run_sweeper(0.01))
        await asyncio.sleep(0.05)
        sweeper.cancel()
        with pytest.raises(asyncio.CancelledError):
            await sweeper
        return cache.stats()["size"]

    assert asyncio.run(scenario()) == 0


def test_roster_is_cached_until_a_write_invalidates_it(
    repository: OrchestratorRepository,
) -> None:
    cache = ResourceCache()
    roster = AgentRoster(repository, cache, ttl_seconds=60)
    roster.register(AgentDescriptor(name="A", provider="test", complexity_threshold=0.3))

    async def scenario() -> list[list[str]]:
        seen = [[agent.name for agent in await roster.active_agents()]]
        repository.upsert_agent(
            AgentDescriptor(name="B", provider="test", complexity_threshold=0.7),
        )
        seen.append([agent.name for agent in await roster.active_agents()])
        roster.set_active("A", active=False)
        seen.append([agent.name for agent in await roster.active_agents()])
        return seen

    cached, stale, refreshed = asyncio.run(scenario())

    assert cached == ["A"]
    assert stale == ["A"]
    assert refreshed == ["B"]
