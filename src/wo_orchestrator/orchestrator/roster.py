"""Cached view of the agent roster."""

from __future__ import annotations

import asyncio

from wo_orchestrator.orchestrator.cache import ResourceCache
from wo_orchestrator.orchestrator.models import AgentDescriptor
from wo_orchestrator.orchestrator.repository import OrchestratorRepository

ACTIVE_AGENTS_CACHE_KEY = "agents:active"


class AgentRoster:
    """Read-mostly agent roster; every write invalidates the cached copy."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        cache: ResourceCache,
        *,
        ttl_seconds: float = 60.0,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    async def active_agents(self) -> tuple[AgentDescriptor, ...]:
        return await self._cache.get_or_fetch(
            ACTIVE_AGENTS_CACHE_KEY,
            self._ttl_seconds,
            self._fetch_active,
        )

    def register(self, agent: AgentDescriptor) -> AgentDescriptor:
        stored = self._repository.upsert_agent(agent)
        self._cache.invalidate(ACTIVE_AGENTS_CACHE_KEY)
        return stored

    def set_active(self, name: str, *, active: bool) -> bool:
        changed = self._repository.set_agent_active(name, active=active)
        self._cache.invalidate(ACTIVE_AGENTS_CACHE_KEY)
        return changed

    async def _fetch_active(self) -> tuple[AgentDescriptor, ...]:
        agents = await asyncio.to_thread(self._repository.list_agents, active_only=True)
        return tuple(agents)
