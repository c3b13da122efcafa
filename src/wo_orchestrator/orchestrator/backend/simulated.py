"""In-process stage implementations for local runs and tests."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from wo_orchestrator.orchestrator.backend.base import (
    ApplyRequest,
    ApplyResult,
    GenerationRequest,
    GenerationResult,
    ProgressCallback,
    PublishRequest,
    PublishResult,
)
from wo_orchestrator.orchestrator.errors import AgentInvocationError, ApplyError, PublishError
from wo_orchestrator.orchestrator.pricing import usage_cost_usd


class SimulatedGenerator:
    """Deterministic generator that fails on demand.

    `failures` maps a job id to how many generation calls fail before one
    succeeds; `failing_agents` always fail.
    """

    def __init__(
        self,
        *,
        failures: Mapping[str, int] | None = None,
        failing_agents: set[str] | None = None,
        failure_message: str = "agent returned unusable output",
        failure_cost_usd: float = 0.0,
        prompt_tokens: int = 1_200,
        completion_tokens: int = 800,
        delay_seconds: float = 0.0,
    ) -> None:
        self._remaining_failures = dict(failures or {})
        self.failing_agents = set(failing_agents or ())
        self.failure_message = failure_message
        self.failure_cost_usd = failure_cost_usd
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.delay_seconds = delay_seconds
        self.calls: list[GenerationRequest] = []

    async def generate(
        self,
        request: GenerationRequest,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationResult:
        self.calls.append(request)
        if on_progress is not None:
            on_progress(0.25, f"prompting {request.agent.name}")
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        remaining = self._remaining_failures.get(request.job_id, 0)
        if remaining > 0 or request.agent.name in self.failing_agents:
            if remaining > 0:
                self._remaining_failures[request.job_id] = remaining - 1
            raise AgentInvocationError(self.failure_message, cost_usd=self.failure_cost_usd)

        if on_progress is not None:
            on_progress(1.0, "generation finished")
        slug = request.job_id.replace("/", "_")
        return GenerationResult(
            files={f"changes/{slug}.md": f"# {request.title}\n\n{request.description or ''}\n"},
            summary=f"Implements {request.title}",
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            cost_usd=usage_cost_usd(
                agent=request.agent,
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
            ),
        )


class SimulatedApplier:
    """Records applied changes; `failures` maps job id to failing call count."""

    def __init__(
        self,
        *,
        failures: Mapping[str, int] | None = None,
        failure_message: str = "patch did not apply",
        delay_seconds: float = 0.0,
    ) -> None:
        self._remaining_failures = dict(failures or {})
        self.failure_message = failure_message
        self.delay_seconds = delay_seconds
        self.calls: list[ApplyRequest] = []

    async def apply(self, request: ApplyRequest) -> ApplyResult:
        self.calls.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        remaining = self._remaining_failures.get(request.job_id, 0)
        if remaining > 0:
            self._remaining_failures[request.job_id] = remaining - 1
            raise ApplyError(self.failure_message, exit_code=1)
        return ApplyResult(
            branch_name=request.branch_name,
            changed_files=tuple(sorted(request.generation.files)),
        )


class SimulatedPublisher:
    """Hands out sequential pull-request numbers."""

    def __init__(
        self,
        *,
        base_url: str = "https://git.example.invalid",
        failures: Mapping[str, int] | None = None,
        failure_message: str = "remote rejected push",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._remaining_failures = dict(failures or {})
        self.failure_message = failure_message
        self._next_number = 1
        self.calls: list[PublishRequest] = []

    async def publish(self, request: PublishRequest) -> PublishResult:
        self.calls.append(request)
        remaining = self._remaining_failures.get(request.job_id, 0)
        if remaining > 0:
            self._remaining_failures[request.job_id] = remaining - 1
            raise PublishError(self.failure_message)
        number = self._next_number
        self._next_number += 1
        return PublishResult(
            pr_url=f"{self.base_url}/{request.target_id}/pull/{number}",
            pr_number=number,
        )
