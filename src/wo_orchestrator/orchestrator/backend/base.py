"""Collaborator interfaces for work-order execution stages."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from wo_orchestrator.orchestrator.models import AgentDescriptor

ProgressCallback = Callable[[float, str], None]


@dataclass(slots=True)
class GenerationRequest:
    """Inputs required to generate one code change."""

    job_id: str
    title: str
    description: str | None
    target_id: str
    complexity_score: float
    agent: AgentDescriptor
    attempt: int
    previous_errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GenerationResult:
    """Generated change plus usage reported by the provider."""

    files: dict[str, str]
    summary: str = ""
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost_usd: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ApplyRequest:
    job_id: str
    target_id: str
    branch_name: str
    generation: GenerationResult


@dataclass(slots=True)
class ApplyResult:
    branch_name: str
    changed_files: tuple[str, ...]
    exit_code: int = 0


@dataclass(slots=True)
class PublishRequest:
    job_id: str
    target_id: str
    title: str
    branch_name: str
    body: str


@dataclass(slots=True)
class PublishResult:
    pr_url: str
    pr_number: int | None = None


class CodeGenerator(Protocol):
    """LLM code-generation provider client."""

    async def generate(
        self,
        request: GenerationRequest,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> GenerationResult:
        """Generate a change; raise AgentInvocationError on provider failure."""


class CodeApplier(Protocol):
    """Code-editing step applying a generated change to the target's working tree."""

    async def apply(self, request: ApplyRequest) -> ApplyResult:
        """Apply a change; raise ApplyError on failure."""


class Publisher(Protocol):
    """Version-control host client creating branches and pull requests."""

    async def publish(self, request: PublishRequest) -> PublishResult:
        """Open a pull request; raise PublishError on rejection."""
