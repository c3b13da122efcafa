"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import asyncio
import shlex
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from wo_orchestrator.config import Settings
from wo_orchestrator.orchestrator.backend import (
    CliCodeApplier,
    CodeApplier,
    SimulatedApplier,
    SimulatedGenerator,
    SimulatedPublisher,
)
from wo_orchestrator.orchestrator.budget import BudgetLedger
from wo_orchestrator.orchestrator.engine import OrchestratorEngine, build_engine
from wo_orchestrator.orchestrator.models import (
    BudgetWindowStatus,
    EscalationStatus,
    JobStatus,
    ProgressEvent,
)
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.orchestrator.services import RegisterAgent, SubmitWorkOrder, WorkOrderService

ECHO_EDITOR_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m wo_orchestrator.orchestrator.backend.echo_editor "
    "--payload-file {payload_file} --workdir {workdir}"
)


@dataclass(slots=True)
class InitDbCommand:
    db_path: Path | None


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for registering a routing candidate."""

    db_path: Path | None
    name: str
    provider: str
    complexity_threshold: float
    input_cost_per_token: float
    output_cost_per_token: float


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    include_inactive: bool


@dataclass(slots=True)
class AgentToggleCommand:
    db_path: Path | None
    name: str
    active: bool


@dataclass(slots=True)
class OrderSubmitCommand:
    """CLI input for work-order submission."""

    db_path: Path | None
    title: str
    target_id: str
    complexity_score: float
    description: str | None
    job_id: str | None
    estimated_cost_usd: float | None
    dependencies: tuple[str, ...]
    approve: bool


@dataclass(slots=True)
class OrderMutateCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class OrderListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class RunCommand:
    """CLI input for a bounded number of poll cycles."""

    db_path: Path | None
    cycles: int
    interval_seconds: float
    use_echo_editor: bool = False


@dataclass(slots=True)
class ExecuteCommand:
    db_path: Path | None
    job_id: str
    use_echo_editor: bool = False


@dataclass(slots=True)
class BudgetStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class EscalationListCommand:
    db_path: Path | None
    status: str | None
    job_id: str | None
    limit: int


@dataclass(slots=True)
class EscalationDecisionCommand:
    """CLI input for resolving or abandoning an escalation."""

    db_path: Path | None
    escalation_id: str
    decided_by: str
    option_id: str | None = None
    notes: str | None = None


class OrchestratorCliController:
    """Coordinates work-order, agent, budget and escalation CLI operations."""

    def init_db(self, command: InitDbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings):
            pass
        return [f"Database ready: {settings.db_path}"]

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agent = WorkOrderService(repository=repository).register_agent(
                RegisterAgent(
                    name=command.name,
                    provider=command.provider,
                    complexity_threshold=command.complexity_threshold,
                    input_cost_per_token=command.input_cost_per_token,
                    output_cost_per_token=command.output_cost_per_token,
                ),
            )
        return [
            f"Agent registered: name={agent.name} provider={agent.provider} "
            f"threshold={agent.complexity_threshold:.2f}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agents = repository.list_agents(active_only=not command.include_inactive)

        lines = [f"Agents: {len(agents)}"]
        for agent in agents:
            lines.append(
                f"  {agent.name} provider={agent.provider} "
                f"threshold={agent.complexity_threshold:.2f} "
                f"input_cost={agent.input_cost_per_token:g} "
                f"output_cost={agent.output_cost_per_token:g} "
                f"active={'yes' if agent.active else 'no'}",
            )
        return lines

    def toggle_agent(self, command: AgentToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            changed = repository.set_agent_active(command.name, active=command.active)
        if not changed:
            return [f"Agent not found: {command.name}"]
        state = "activated" if command.active else "deactivated"
        return [f"Agent {state}: {command.name}"]

    def submit_order(self, command: OrderSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            work_order = WorkOrderService(repository=repository).submit(
                SubmitWorkOrder(
                    title=command.title,
                    target_id=command.target_id,
                    complexity_score=command.complexity_score,
                    description=command.description,
                    job_id=command.job_id,
                    estimated_cost_usd=command.estimated_cost_usd,
                    dependencies=command.dependencies,
                    approve=command.approve,
                ),
            )
        dependencies = ",".join(work_order.dependencies) or "-"
        return [
            "Work order submitted: "
            f"job_id={work_order.job_id} target={work_order.target_id} "
            f"status={work_order.status.value} dependencies={dependencies}",
        ]

    def approve_order(self, command: OrderMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            work_order = WorkOrderService(repository=repository).approve(command.job_id)
        return [f"Work order approved: {work_order.job_id}"]

    def list_orders(self, command: OrderListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            work_orders = repository.list_work_orders(status=status_filter, limit=command.limit)

        lines = [f"Work orders: {len(work_orders)}"]
        for work_order in work_orders:
            lines.append(
                f"  {work_order.job_id} target={work_order.target_id} "
                f"status={work_order.status.value} "
                f"complexity={work_order.complexity_score:.2f} attempt={work_order.attempt} "
                f"agent={work_order.selected_agent or '-'}",
            )
        return lines

    def inspect_order(self, command: OrderMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_work_order_details(command.job_id)
            cost = repository.job_cost(command.job_id)
        if details is None:
            return [f"Work order not found: {command.job_id}"]

        work_order = details.work_order
        attempts = work_order.metadata.get("attempts")
        lines = [
            f"Work order: {work_order.job_id}",
            f"Title: {work_order.title}",
            f"Target: {work_order.target_id}",
            f"Status: {work_order.status.value}",
            f"Complexity: {work_order.complexity_score:.2f}",
            f"Attempt: {work_order.attempt}",
            f"Agent: {work_order.selected_agent or '-'}",
            f"Dependencies: {', '.join(work_order.dependencies) or '-'}",
            f"Branch: {work_order.branch_name or '-'}",
            f"Pull request: {work_order.pr_url or '-'}",
            f"Failure: {work_order.failure_class.value if work_order.failure_class else '-'}",
            f"Error: {work_order.error_summary or '-'}",
            f"Cost: ${cost:.4f}",
            f"Attempts recorded: {len(attempts) if isinstance(attempts, list) else 0}",
            f"Escalations: {len(details.escalations)}",
            f"Events: {len(details.events)}",
        ]
        for escalation in details.escalations:
            lines.append(
                f"  escalation {escalation.escalation_id} trigger={escalation.trigger.value} "
                f"status={escalation.status.value} "
                f"recommended={escalation.recommended_option or '-'}",
            )
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run(self, command: RunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            engine = _build_engine(settings, repository, use_echo_editor=command.use_echo_editor)
            return asyncio.run(_run_cycles(engine, command.cycles, command.interval_seconds))

    def execute(self, command: ExecuteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            engine = _build_engine(settings, repository, use_echo_editor=command.use_echo_editor)
            return asyncio.run(_execute_one(engine, command.job_id))

    def budget_status(self, command: BudgetStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            status = BudgetLedger(repository, settings.budget).status()

        lines = [_render_window(status.daily), _render_window(status.monthly)]
        raised = [name for name, active in status.alerts.items() if active]
        lines.append(f"Alerts: {', '.join(raised) if raised else 'none'}")
        return lines

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = EscalationStatus(command.status.strip().lower()) if command.status else None
        with _repository(settings) as repository:
            escalations = repository.list_escalations(
                job_id=command.job_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Escalations: {len(escalations)}"]
        for escalation in escalations:
            cost = escalation.context.get("cost_spent_so_far", 0.0)
            lines.append(
                f"  {escalation.escalation_id} job={escalation.job_id} "
                f"trigger={escalation.trigger.value} status={escalation.status.value} "
                f"recommended={escalation.recommended_option or '-'} cost=${float(cost):.4f}",
            )
            for option in escalation.options:
                lines.append(
                    f"    {option.get('option_id')}: {option.get('title')} "
                    f"p={float(option.get('success_probability', 0.0)):.2f} "
                    f"cost=${float(option.get('estimated_cost_usd', 0.0)):.2f} "
                    f"risk={option.get('risk')}",
                )
        return lines

    def resolve_escalation(self, command: EscalationDecisionCommand) -> list[str]:
        if not command.option_id:
            raise ValueError("A resolution option is required.")
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            engine = _build_engine(settings, repository, use_echo_editor=False)
            work_order = asyncio.run(
                engine.resolve_escalation(
                    command.escalation_id,
                    command.option_id,
                    decided_by=command.decided_by,
                    notes=command.notes,
                ),
            )
        return [
            f"Escalation resolved: {command.escalation_id} option={command.option_id.upper()}",
            f"Work order {work_order.job_id} is now {work_order.status.value}",
        ]

    def abandon_escalation(self, command: EscalationDecisionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            engine = _build_engine(settings, repository, use_echo_editor=False)
            work_order = asyncio.run(
                engine.abandon_escalation(
                    command.escalation_id,
                    decided_by=command.decided_by,
                    notes=command.notes,
                ),
            )
        return [
            f"Escalation abandoned: {command.escalation_id}",
            f"Work order {work_order.job_id} is now {work_order.status.value}",
        ]


async def _run_cycles(
    engine: OrchestratorEngine,
    cycles: int,
    interval_seconds: float,
) -> list[str]:
    lines: list[str] = []
    try:
        for cycle in range(1, cycles + 1):
            summary = await engine.poll_once()
            await engine.wait_idle()
            lines.append(
                f"Cycle {cycle}: scanned={summary.scanned} dispatched={summary.dispatched} "
                f"ineligible={summary.ineligible} capacity_skipped={summary.capacity_skipped}",
            )
            if cycle < cycles and interval_seconds > 0:
                await asyncio.sleep(interval_seconds)
    finally:
        await engine.close()

    status = engine.get_status()
    lines.append(
        f"Engine summary: executed={status.total_executed} failed={status.total_failed}",
    )
    for error in status.recent_errors:
        lines.append(
            f"  error job={error['job_id']} stage={error['stage']} "
            f"class={error['failure_class']}: {error['message']}",
        )
    return lines


async def _execute_one(engine: OrchestratorEngine, job_id: str) -> list[str]:
    events: list[ProgressEvent] = []
    engine.bus.on(job_id, events.append)
    try:
        outcome = await engine.execute_work_order(job_id)
    finally:
        await engine.close()

    lines = [_render_event(event) for event in events]
    lines.append(
        f"Result: {outcome.result.value} status={outcome.status.value if outcome.status else '-'} "
        f"agent={outcome.agent or '-'}",
    )
    if outcome.error is not None:
        lines.append(
            f"Error: {outcome.error.stage.value}/{outcome.error.failure_class.value}: "
            f"{outcome.error.message}",
        )
    if outcome.escalation_id is not None:
        lines.append(f"Escalation: {outcome.escalation_id}")
    return lines


def _build_engine(
    settings: Settings,
    repository: OrchestratorRepository,
    *,
    use_echo_editor: bool,
) -> OrchestratorEngine:
    return build_engine(
        settings,
        repository,
        generator=SimulatedGenerator(),
        applier=_applier(settings, use_echo_editor=use_echo_editor),
        publisher=SimulatedPublisher(),
    )


def _applier(settings: Settings, *, use_echo_editor: bool) -> CodeApplier:
    template = (
        ECHO_EDITOR_COMMAND_TEMPLATE if use_echo_editor else settings.applier.command_template
    )
    if template is None:
        return SimulatedApplier()
    return CliCodeApplier(
        command_template=template,
        workdir_root=settings.applier.workdir_root,
        timeout_seconds=settings.applier.timeout_seconds,
    )


def _render_event(event: ProgressEvent) -> str:
    suffix = f" {event.message}" if event.message else ""
    return f"  [{event.progress:3d}%] {event.event_type.value}{suffix}"


def _render_window(window: BudgetWindowStatus) -> str:
    return (
        f"{window.window.capitalize()}: spent=${window.spent_usd:.2f} "
        f"limit=${window.limit_usd:.2f} remaining=${window.remaining_usd:.2f} "
        f"({window.percentage:.1f}%) status={window.status.value} "
        f"requests={window.request_count}"
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
