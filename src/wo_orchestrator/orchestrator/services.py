"""Use-case services for submitting work orders and managing agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from wo_orchestrator.orchestrator.models import (
    AgentDescriptor,
    JobStatus,
    WorkOrderCreate,
    WorkOrderView,
)
from wo_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitWorkOrder:
    """High-level command to submit a work order."""

    title: str
    target_id: str
    complexity_score: float
    description: str | None = None
    job_id: str | None = None
    estimated_cost_usd: float | None = None
    dependencies: tuple[str, ...] = ()
    approve: bool = False
    metadata: dict[str, object] | None = None


@dataclass(slots=True)
class RegisterAgent:
    """High-level command to add or update a routing candidate."""

    name: str
    provider: str
    complexity_threshold: float
    input_cost_per_token: float = 0.0
    output_cost_per_token: float = 0.0


class WorkOrderService:
    """Validates submissions before they reach the store."""

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def submit(self, command: SubmitWorkOrder) -> WorkOrderView:
        if not command.title.strip():
            raise ValueError("Work order title must not be empty.")
        if not command.target_id.strip():
            raise ValueError("Work order target must not be empty.")
        if not 0.0 <= command.complexity_score <= 1.0:
            raise ValueError(
                f"Complexity score must be within [0, 1], got {command.complexity_score}.",
            )
        if command.estimated_cost_usd is not None and command.estimated_cost_usd < 0:
            raise ValueError("Estimated cost must be non-negative.")

        work_order = self.repository.create_work_order(
            WorkOrderCreate(
                title=command.title.strip(),
                target_id=command.target_id.strip(),
                complexity_score=command.complexity_score,
                description=command.description,
                job_id=command.job_id,
                estimated_cost_usd=command.estimated_cost_usd,
                dependencies=command.dependencies,
                metadata=dict(command.metadata or {}),
            ),
            status=JobStatus.APPROVED if command.approve else JobStatus.PENDING,
        )
        logger.info(
            "Work order %s submitted for %s (status=%s)",
            work_order.job_id,
            work_order.target_id,
            work_order.status.value,
        )
        return work_order

    def approve(self, job_id: str) -> WorkOrderView:
        work_order = self.repository.approve(job_id)
        logger.info("Work order %s approved", job_id)
        return work_order

    def register_agent(self, command: RegisterAgent) -> AgentDescriptor:
        if not command.name.strip():
            raise ValueError("Agent name must not be empty.")
        if not 0.0 <= command.complexity_threshold <= 1.0:
            raise ValueError(
                f"Complexity threshold must be within [0, 1], got {command.complexity_threshold}.",
            )
        if command.input_cost_per_token < 0 or command.output_cost_per_token < 0:
            raise ValueError("Per-token costs must be non-negative.")
        return self.repository.upsert_agent(
            AgentDescriptor(
                name=command.name.strip(),
                provider=command.provider.strip(),
                complexity_threshold=command.complexity_threshold,
                input_cost_per_token=command.input_cost_per_token,
                output_cost_per_token=command.output_cost_per_token,
            ),
        )
