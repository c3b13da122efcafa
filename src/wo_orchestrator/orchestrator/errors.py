"""Exception hierarchy for work-order execution."""

from __future__ import annotations

from wo_orchestrator.orchestrator.models import FailureClass, Stage


class OrchestratorError(RuntimeError):
    """Base error raised by the orchestrator core."""


class StageError(OrchestratorError):
    """Failure of one external execution stage.

    `cost_usd` carries spend already incurred before the failure so the ledger
    can be corrected from the reservation to the partial cost.
    """

    stage: Stage = Stage.GENERATION
    failure_class: FailureClass = FailureClass.UNCLASSIFIED

    def __init__(
        self,
        message: str,
        *,
        cost_usd: float = 0.0,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.cost_usd = cost_usd
        self.exit_code = exit_code


class AgentInvocationError(StageError):
    """Code-generation call failed or returned unusable output."""

    stage = Stage.GENERATION
    failure_class = FailureClass.AGENT_INVOCATION_ERROR


class ApplyError(StageError):
    """Code-editing step failed."""

    stage = Stage.APPLY
    failure_class = FailureClass.APPLY_ERROR


class PublishError(StageError):
    """Version-control host rejected branch or PR creation."""

    stage = Stage.PUBLISH
    failure_class = FailureClass.PUBLISH_ERROR


class RoutingError(OrchestratorError):
    """No active agent is available to route a work order."""


class WorkOrderNotFoundError(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Work order not found: {job_id}")
        self.job_id = job_id


class EscalationNotFoundError(OrchestratorError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Open escalation not found: {reference}")
        self.reference = reference


class StateConflictError(OrchestratorError):
    """Record changed concurrently or is not in the expected state."""
