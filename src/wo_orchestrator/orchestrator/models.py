"""Domain models for work-order execution, budgeting and escalation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable work-order lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"


class Stage(str, Enum):
    """Execution stage where a failure originated."""

    DISPATCH = "dispatch"
    BUDGET = "budget"
    ROUTING = "routing"
    GENERATION = "generation"
    APPLY = "apply"
    PUBLISH = "publish"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry and escalation policy."""

    AGENT_INVOCATION_ERROR = "agent_invocation_error"
    APPLY_ERROR = "apply_error"
    PUBLISH_ERROR = "publish_error"
    BUDGET_REJECTED = "budget_rejected"
    DEPENDENCY_UNMET = "dependency_unmet"
    UNCLASSIFIED = "unclassified"


class ProgressEventType(str, Enum):
    """Live progress notification kinds."""

    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {ProgressEventType.COMPLETED, ProgressEventType.FAILED}


class BudgetTier(str, Enum):
    """Threshold tier a reservation landed in."""

    NORMAL = "normal"
    SOFT = "soft"
    HARD = "hard"
    EMERGENCY = "emergency"


class BudgetHealth(str, Enum):
    """Operator-facing health of one spend window."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class CostRecordKind(str, Enum):
    """Append-only ledger record kinds."""

    RESERVATION = "reservation"
    CORRECTION = "correction"
    USAGE = "usage"


class EscalationTrigger(str, Enum):
    """Why automated handling stopped."""

    EXHAUSTED_RETRIES = "exhausted_retries"
    # Stored vocabulary only: no CI signal is recorded, so the classifier never picks it.
    REPEATED_CI_FAILURE = "repeated_ci_failure"
    BUDGET_OVERRUN = "budget_overrun"
    CONFLICTING_REQUIREMENTS = "conflicting_requirements"
    TECHNICAL_BLOCKER = "technical_blocker"
    IRRECONCILABLE_STATE = "irreconcilable_state"


class EscalationStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExecutionResult(str, Enum):
    """Outcome of one execute_work_order call."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    ESCALATED = "escalated"
    FAILED = "failed"
    BUDGET_DEFERRED = "budget_deferred"
    SKIPPED = "skipped"


@dataclass(slots=True)
class WorkOrderCreate:
    """Input payload for submitting a work order."""

    title: str
    target_id: str
    complexity_score: float
    description: str | None = None
    job_id: str | None = None
    estimated_cost_usd: float | None = None
    dependencies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkOrderView:
    """Readable work-order view for the engine and CLI."""

    job_id: str
    title: str
    description: str | None
    target_id: str
    status: JobStatus
    complexity_score: float
    estimated_cost_usd: float | None
    attempt: int
    selected_agent: str | None
    pinned_agent: str | None
    branch_name: str | None
    pr_url: str | None
    failure_stage: str | None
    failure_class: FailureClass | None
    error_summary: str | None
    metadata: dict[str, Any]
    dependencies: tuple[str, ...]
    version: int
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class WorkOrderEventView:
    """Work-order event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkOrderDetails:
    """Work order with its event stream and escalations."""

    work_order: WorkOrderView
    events: list[WorkOrderEventView]
    escalations: list[EscalationView]


@dataclass(slots=True, frozen=True)
class AgentDescriptor:
    """Routing candidate with its capability ceiling and token rates."""

    name: str
    provider: str
    complexity_threshold: float
    input_cost_per_token: float = 0.0
    output_cost_per_token: float = 0.0
    active: bool = True


@dataclass(slots=True, frozen=True)
class RoutingDecision:
    """Agent selected for a work order and the reason it was picked."""

    agent: AgentDescriptor
    reason: str
    complexity_score: float
    below_confidence: bool = False

    def to_metadata(self, *, routed_at: datetime) -> dict[str, Any]:
        return {
            "selected_agent": self.agent.name,
            "provider": self.agent.provider,
            "reason": self.reason,
            "complexity_score": self.complexity_score,
            "agent_threshold": self.agent.complexity_threshold,
            "below_confidence": self.below_confidence,
            "routed_at": routed_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class RetryStrategy:
    """Next step of the retry ladder."""

    next_agent: AgentDescriptor | None
    should_escalate: bool
    reason: str


@dataclass(slots=True, frozen=True)
class BudgetReservation:
    """Result of one atomic check-and-reserve call."""

    approved: bool
    tier: BudgetTier
    estimated_cost_usd: float
    projected_daily_spend_usd: float
    reason: str | None = None
    reservation_id: str | None = None
    service_tag: str = ""
    job_id: str | None = None

    @property
    def warning(self) -> bool:
        return self.approved and self.tier == BudgetTier.SOFT

    @property
    def fatal(self) -> bool:
        return not self.approved and self.tier == BudgetTier.EMERGENCY


@dataclass(slots=True)
class BudgetWindowStatus:
    """Spend summary for one calendar window."""

    window: str
    spent_usd: float
    limit_usd: float
    remaining_usd: float
    percentage: float
    status: BudgetHealth
    request_count: int


@dataclass(slots=True)
class BudgetStatus:
    """Read-only ledger status for daily and monthly windows."""

    daily: BudgetWindowStatus
    monthly: BudgetWindowStatus
    alerts: dict[str, bool]
    emergency_latched: bool


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """Transient progress notification for one work order."""

    job_id: str
    event_type: ProgressEventType
    progress: int
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.event_type.value,
            "progress": self.progress,
            "message": self.message,
            "metadata": self.metadata,
            "emitted_at": self.emitted_at.isoformat() if self.emitted_at else None,
        }


@dataclass(slots=True, frozen=True)
class StructuredError:
    """Stable, class-based failure reason persisted on a work order."""

    stage: Stage
    failure_class: FailureClass
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "stage": self.stage.value,
            "failure_class": self.failure_class.value,
            "message": self.message,
        }


@dataclass(slots=True)
class ResolutionOption:
    """One ranked way out of an escalation."""

    option_id: str
    key: str
    title: str
    description: str
    estimated_cost_usd: float
    success_probability: float
    risk: RiskLevel
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "option_id": self.option_id,
            "key": self.key,
            "title": self.title,
            "description": self.description,
            "estimated_cost_usd": round(self.estimated_cost_usd, 4),
            "success_probability": round(self.success_probability, 4),
            "risk": self.risk.value,
            "score": round(self.score, 4),
        }


@dataclass(slots=True)
class EscalationCreate:
    """Input payload for persisting an escalation."""

    job_id: str
    trigger: EscalationTrigger
    context: dict[str, Any]
    options: list[ResolutionOption]
    recommended_option: str | None


@dataclass(slots=True)
class EscalationView:
    """Persisted escalation record."""

    escalation_id: str
    job_id: str
    trigger: EscalationTrigger
    status: EscalationStatus
    context: dict[str, Any]
    options: list[dict[str, Any]]
    recommended_option: str | None
    chosen_option: str | None
    decided_by: str | None
    decision_notes: str | None
    created_at: datetime
    resolved_at: datetime | None


@dataclass(slots=True)
class ExecutionOutcome:
    """What happened to a work order during one execution attempt."""

    job_id: str
    result: ExecutionResult
    status: JobStatus | None = None
    agent: str | None = None
    error: StructuredError | None = None
    escalation_id: str | None = None


@dataclass(slots=True)
class PollSummary:
    """Counters for one poll scan."""

    scanned: int = 0
    dispatched: int = 0
    ineligible: int = 0
    already_executing: int = 0
    capacity_skipped: int = 0
    skipped_overlap: bool = False
    dispatched_job_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EngineStatus:
    """Operator snapshot of the poll loop and in-flight executions."""

    polling: bool
    interval_seconds: float
    executing: tuple[str, ...]
    max_concurrent_executions: int
    last_poll_at: datetime | None
    total_executed: int
    total_failed: int
    recent_errors: list[dict[str, Any]]
    locks: dict[str, Any]
