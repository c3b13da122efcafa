"""Persistent store facade for work orders, agents, cost ledger and escalations."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, Float, String, func, literal
from sqlalchemy import insert as sa_insert
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from wo_orchestrator.orchestrator.errors import StateConflictError, WorkOrderNotFoundError
from wo_orchestrator.orchestrator.models import (
    AgentDescriptor,
    CostRecordKind,
    EscalationCreate,
    EscalationStatus,
    EscalationTrigger,
    EscalationView,
    FailureClass,
    JobStatus,
    RoutingDecision,
    StructuredError,
    WorkOrderCreate,
    WorkOrderDetails,
    WorkOrderEventView,
    WorkOrderView,
)
from wo_orchestrator.storage.alembic_runner import upgrade_head
from wo_orchestrator.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from wo_orchestrator.storage.sqlmodel_models import (
    Agent,
    CostRecord,
    Escalation,
    WorkOrder,
    WorkOrderDependency,
    WorkOrderEvent,
)

logger = logging.getLogger(__name__)

METADATA_DEPENDENCY_KEYS: tuple[str, ...] = ("dependencies", "dependency_ids", "depends_on")
_MAX_VERSION_RETRIES = 20


class OrchestratorRepository:
    """Work-order persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Work orders

    def create_work_order(
        self,
        payload: WorkOrderCreate,
        *,
        status: JobStatus = JobStatus.PENDING,
    ) -> WorkOrderView:
        """Persist a new work order with its dependency set."""

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        dependencies = _collect_dependencies(payload.dependencies, payload.metadata)
        if job_id in dependencies:
            raise ValueError(f"Work order cannot depend on itself: {job_id}")

        metadata = dict(payload.metadata)
        for key in METADATA_DEPENDENCY_KEYS:
            metadata.pop(key, None)
        metadata["dependencies"] = list(dependencies)

        with Session(self.engine) as session:
            row = WorkOrder(
                job_id=job_id,
                title=payload.title,
                description=payload.description,
                target_id=payload.target_id,
                status=status.value,
                complexity_score=payload.complexity_score,
                estimated_cost_usd=payload.estimated_cost_usd,
                attempt=0,
                metadata_json=_dump_json(metadata),
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # Parent row must exist before dependency rows reference it.
            session.flush()
            for dependency_id in dependencies:
                session.add(WorkOrderDependency(job_id=job_id, depends_on_job_id=dependency_id))
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="submitted",
                status_from=None,
                status_to=status,
                details={
                    "target_id": payload.target_id,
                    "complexity_score": payload.complexity_score,
                    "dependencies": list(dependencies),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_work_order_view(row, dependencies=dependencies)

    def get_work_order(self, job_id: str) -> WorkOrderView | None:
        with Session(self.engine) as session:
            row = session.get(WorkOrder, job_id)
            if row is None:
                return None
            return _to_work_order_view(row, dependencies=self._dependencies(session, job_id))

    def require_work_order(self, job_id: str) -> WorkOrderView:
        work_order = self.get_work_order(job_id)
        if work_order is None:
            raise WorkOrderNotFoundError(job_id)
        return work_order

    def list_by_status(self, status: JobStatus, *, limit: int | None = None) -> list[WorkOrderView]:
        """Work orders in one status, oldest first (dispatch order)."""

        with Session(self.engine) as session:
            statement = (
                select(WorkOrder)
                .where(WorkOrder.status == status.value)
                .order_by(col(WorkOrder.created_at).asc(), col(WorkOrder.job_id).asc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [
                _to_work_order_view(row, dependencies=self._dependencies(session, row.job_id))
                for row in rows
            ]

    def list_work_orders(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[WorkOrderView]:
        """List recent work orders, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(WorkOrder).order_by(col(WorkOrder.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(WorkOrder.status == status.value)
            rows = session.exec(statement).all()
            return [
                _to_work_order_view(row, dependencies=self._dependencies(session, row.job_id))
                for row in rows
            ]

    def get_work_order_details(self, job_id: str) -> WorkOrderDetails | None:
        """Return work order with its event stream and escalations."""

        with Session(self.engine) as session:
            row = session.get(WorkOrder, job_id)
            if row is None:
                return None
            work_order = _to_work_order_view(row, dependencies=self._dependencies(session, job_id))
            event_rows = session.exec(
                select(WorkOrderEvent)
                .where(WorkOrderEvent.job_id == job_id)
                .order_by(col(WorkOrderEvent.created_at).asc(), col(WorkOrderEvent.id).asc()),
            ).all()
            escalation_rows = session.exec(
                select(Escalation)
                .where(Escalation.job_id == job_id)
                .order_by(col(Escalation.created_at).asc()),
            ).all()

        events = [
            WorkOrderEventView(
                event_id=event_row.id or 0,
                job_id=event_row.job_id,
                event_type=event_row.event_type,
                status_from=(
                    JobStatus(event_row.status_from) if event_row.status_from is not None else None
                ),
                status_to=(
                    JobStatus(event_row.status_to) if event_row.status_to is not None else None
                ),
                created_at=to_utc_aware(event_row.created_at),
                details=_load_json_object(event_row.details_json),
            )
            for event_row in event_rows
        ]
        return WorkOrderDetails(
            work_order=work_order,
            events=events,
            escalations=[_to_escalation_view(item) for item in escalation_rows],
        )

    def dependency_statuses(self, job_id: str) -> dict[str, JobStatus | None]:
        """Current status of every dependency, `None` for unknown ids."""

        with Session(self.engine) as session:
            dependencies = self._dependencies(session, job_id)
            if not dependencies:
                return {}
            rows = session.exec(
                select(WorkOrder.job_id, WorkOrder.status).where(
                    col(WorkOrder.job_id).in_(dependencies),
                ),
            ).all()
        known = {dependency_id: JobStatus(status) for dependency_id, status in rows}
        return {dependency_id: known.get(dependency_id) for dependency_id in dependencies}

    def approve(self, job_id: str) -> WorkOrderView:
        """Move a pending work order to approved."""

        if not self._transition(
            job_id=job_id,
            expected=(JobStatus.PENDING,),
            to=JobStatus.APPROVED,
            event_type="approved",
        ):
            current = self.require_work_order(job_id)
            raise StateConflictError(
                f"Only pending work orders can be approved, got {current.status.value} "
                f"(job_id={job_id}).",
            )
        return self.require_work_order(job_id)

    def claim_for_execution(self, job_id: str) -> WorkOrderView | None:
        """Atomically move an approved work order to in_progress."""

        now = to_db_datetime(utc_now())
        claimed = self._transition(
            job_id=job_id,
            expected=(JobStatus.APPROVED,),
            to=JobStatus.IN_PROGRESS,
            event_type="claimed",
            values={
                "attempt": col(WorkOrder.attempt) + 1,
                "started_at": now,
                "finished_at": None,
                "failure_stage": None,
                "failure_class": None,
                "error_summary": None,
            },
        )
        if not claimed:
            return None
        return self.get_work_order(job_id)

    def record_routing(self, job_id: str, decision: RoutingDecision) -> None:
        """Persist the routing decision before any external call."""

        routing = decision.to_metadata(routed_at=utc_now())
        updated = self._transition(
            job_id=job_id,
            expected=(JobStatus.IN_PROGRESS,),
            to=JobStatus.IN_PROGRESS,
            event_type="routed",
            values={"selected_agent": decision.agent.name},
            metadata_patch={"routing_decision": routing},
            details=routing,
        )
        if not updated:
            raise StateConflictError(f"Work order left in_progress before routing: {job_id}")

    def complete(
        self,
        job_id: str,
        *,
        branch_name: str | None,
        pr_url: str | None,
        artifacts: dict[str, Any] | None = None,
    ) -> bool:
        """Mark an in-progress work order as completed."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.IN_PROGRESS,),
            to=JobStatus.COMPLETED,
            event_type="completed",
            values={"branch_name": branch_name, "pr_url": pr_url, "finished_at": now},
            metadata_patch={"artifacts": artifacts or {}},
            details={"branch_name": branch_name, "pr_url": pr_url},
        )

    def requeue_for_retry(
        self,
        job_id: str,
        *,
        error: StructuredError,
        pinned_agent: str | None,
    ) -> bool:
        """Return an in-progress work order to approved for another attempt."""

        return self._transition(
            job_id=job_id,
            expected=(JobStatus.IN_PROGRESS,),
            to=JobStatus.APPROVED,
            event_type="retry_scheduled",
            values={
                "pinned_agent": pinned_agent,
                **_error_columns(error),
            },
            metadata_patch={"last_error": error.to_dict()},
            details={"pinned_agent": pinned_agent, **error.to_dict()},
        )

    def mark_escalated(self, job_id: str, *, error: StructuredError, escalation_id: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=(JobStatus.IN_PROGRESS,),
            to=JobStatus.ESCALATED,
            event_type="escalated",
            values={"finished_at": now, **_error_columns(error)},
            metadata_patch={"orchestrator_error": error.to_dict(), "escalation_id": escalation_id},
            details={"escalation_id": escalation_id, **error.to_dict()},
        )

    def mark_failed(
        self,
        job_id: str,
        *,
        error: StructuredError,
        expected: tuple[JobStatus, ...] = (JobStatus.IN_PROGRESS,),
        extra_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Terminal failure carrying a structured error object."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=expected,
            to=JobStatus.FAILED,
            event_type="failed",
            values={"finished_at": now, **_error_columns(error)},
            metadata_patch={"orchestrator_error": error.to_dict(), **(extra_metadata or {})},
            details=error.to_dict(),
        )

    def reopen_from_escalation(self, job_id: str, *, pinned_agent: str | None) -> bool:
        """Re-approve an escalated work order with a fresh attempt budget.

        Earlier attempts stay in the history; `attempts_epoch` marks where the
        new budget starts.
        """

        def _start_epoch(metadata: dict[str, Any]) -> None:
            history = metadata.get("attempts")
            metadata["attempts_epoch"] = len(history) if isinstance(history, list) else 0

        return self._transition(
            job_id=job_id,
            expected=(JobStatus.ESCALATED,),
            to=JobStatus.APPROVED,
            event_type="escalation_retry",
            values={
                "attempt": 0,
                "pinned_agent": pinned_agent,
                "finished_at": None,
                "failure_stage": None,
                "failure_class": None,
                "error_summary": None,
            },
            mutate_metadata=_start_epoch,
            details={"pinned_agent": pinned_agent},
        )

    def append_attempt(self, job_id: str, attempt: dict[str, Any]) -> dict[str, Any]:
        """Append one entry to the attempt history without clobbering other keys."""

        def _append(metadata: dict[str, Any]) -> None:
            history = metadata.get("attempts")
            if not isinstance(history, list):
                history = []
            history.append(attempt)
            metadata["attempts"] = history

        return self.update_metadata(job_id, _append)

    def merge_metadata(self, job_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Shallow-merge keys into the metadata blob under the version token."""

        return self.update_metadata(job_id, lambda metadata: metadata.update(patch))

    def update_metadata(
        self,
        job_id: str,
        mutate: Callable[[dict[str, Any]], None],
    ) -> dict[str, Any]:
        """Read-modify-write the metadata blob with optimistic concurrency.

        The write is conditional on the `version` read; a concurrent writer bumps
        it and this call re-reads and re-applies `mutate` on the fresh blob.
        """

        for _ in range(_MAX_VERSION_RETRIES):
            with Session(self.engine) as session:
                row = session.get(WorkOrder, job_id)
                if row is None:
                    raise WorkOrderNotFoundError(job_id)
                metadata = _load_json_object(row.metadata_json)
                mutate(metadata)
                result = session.exec(
                    sa_update(WorkOrder)
                    .where(
                        col(WorkOrder.job_id) == job_id,
                        col(WorkOrder.version) == row.version,
                    )
                    .values(
                        metadata_json=_dump_json(metadata),
                        version=row.version + 1,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Metadata version conflict for %s, retrying", job_id)
                    continue
                session.commit()
                return metadata
        raise StateConflictError(
            f"Metadata update kept conflicting after {_MAX_VERSION_RETRIES} attempts "
            f"(job_id={job_id}).",
        )

    # Agents

    def upsert_agent(self, agent: AgentDescriptor) -> AgentDescriptor:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(Agent, agent.name)
            if row is None:
                row = Agent(
                    name=agent.name,
                    provider=agent.provider,
                    complexity_threshold=agent.complexity_threshold,
                    created_at=now,
                    updated_at=now,
                )
            row.provider = agent.provider
            row.complexity_threshold = agent.complexity_threshold
            row.input_cost_per_token = agent.input_cost_per_token
            row.output_cost_per_token = agent.output_cost_per_token
            row.active = agent.active
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_descriptor(row)

    def set_agent_active(self, name: str, *, active: bool) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Agent)
                .where(col(Agent.name) == name)
                .values(active=active, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def list_agents(self, *, active_only: bool = True) -> list[AgentDescriptor]:
        """Agent roster ordered by routing threshold."""

        with Session(self.engine) as session:
            statement = select(Agent).order_by(
                col(Agent.complexity_threshold).asc(),
                col(Agent.name).asc(),
            )
            if active_only:
                statement = statement.where(col(Agent.active).is_(True))
            rows = session.exec(statement).all()
        return [_to_agent_descriptor(row) for row in rows]

    # Cost ledger

    def insert_cost_if_below(
        self,
        *,
        cost_usd: float,
        ceiling_usd: float,
        since: datetime,
        service_tag: str,
        job_id: str | None,
        kind: CostRecordKind = CostRecordKind.RESERVATION,
    ) -> str | None:
        """Append a cost record only if window spend plus cost stays below the ceiling.

        Sum and insert are one `INSERT ... SELECT ... WHERE` statement, so the check
        holds against any other writer of the same database.
        """

        record_id = str(uuid4())
        now = to_db_datetime(utc_now())
        spent = (
            select(func.coalesce(func.sum(CostRecord.cost_usd), 0.0))
            .where(col(CostRecord.created_at) >= to_db_datetime(since))
            .scalar_subquery()
        )
        source = select(
            literal(record_id, type_=String()),
            literal(service_tag, type_=String()),
            literal(kind.value, type_=String()),
            literal(cost_usd, type_=Float()),
            literal(job_id, type_=String()),
            literal(record_id, type_=String()),
            literal(now, type_=DateTime()),
        ).where(spent + cost_usd < ceiling_usd)
        statement = sa_insert(CostRecord).from_select(
            [
                "record_id",
                "service_tag",
                "kind",
                "cost_usd",
                "job_id",
                "reservation_id",
                "created_at",
            ],
            source,
        )
        with Session(self.engine) as session:
            result = session.exec(statement)
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
        return record_id

    def add_cost_record(
        self,
        *,
        cost_usd: float,
        service_tag: str,
        kind: CostRecordKind,
        job_id: str | None = None,
        reservation_id: str | None = None,
    ) -> str:
        record_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                CostRecord(
                    record_id=record_id,
                    service_tag=service_tag,
                    kind=kind.value,
                    cost_usd=cost_usd,
                    job_id=job_id,
                    reservation_id=reservation_id or record_id,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        return record_id

    def sum_costs(self, *, since: datetime, until: datetime | None = None) -> tuple[float, int]:
        """Total spend and request count for a date range."""

        with Session(self.engine) as session:
            statement = select(
                func.coalesce(func.sum(CostRecord.cost_usd), 0.0),
                func.count(col(CostRecord.record_id)).filter(
                    col(CostRecord.kind) != CostRecordKind.CORRECTION.value,
                ),
            ).where(col(CostRecord.created_at) >= to_db_datetime(since))
            if until is not None:
                statement = statement.where(col(CostRecord.created_at) < to_db_datetime(until))
            total, count = session.exec(statement).one()
        return float(total or 0.0), int(count or 0)

    def job_cost(self, job_id: str) -> float:
        """Net recorded spend for one work order."""

        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(CostRecord.cost_usd), 0.0)).where(
                    CostRecord.job_id == job_id,
                ),
            ).one()
        return float(total or 0.0)

    # Escalations

    def create_escalation(self, payload: EscalationCreate) -> EscalationView:
        escalation_id = str(uuid4())
        with Session(self.engine) as session:
            row = Escalation(
                escalation_id=escalation_id,
                job_id=payload.job_id,
                trigger_type=payload.trigger.value,
                status=EscalationStatus.OPEN.value,
                context_json=_dump_json(payload.context),
                options_json=json.dumps(
                    [option.to_dict() for option in payload.options],
                    ensure_ascii=False,
                ),
                recommended_option=payload.recommended_option,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_escalation_view(row)

    def get_escalation(self, escalation_id: str) -> EscalationView | None:
        with Session(self.engine) as session:
            row = session.get(Escalation, escalation_id)
            return _to_escalation_view(row) if row is not None else None

    def list_escalations(
        self,
        *,
        job_id: str | None = None,
        status: EscalationStatus | None = None,
        limit: int = 50,
    ) -> list[EscalationView]:
        with Session(self.engine) as session:
            statement = select(Escalation).order_by(col(Escalation.created_at).desc()).limit(limit)
            if job_id is not None:
                statement = statement.where(Escalation.job_id == job_id)
            if status is not None:
                statement = statement.where(Escalation.status == status.value)
            rows = session.exec(statement).all()
        return [_to_escalation_view(row) for row in rows]

    def close_escalation(
        self,
        escalation_id: str,
        *,
        status: EscalationStatus,
        chosen_option: str | None,
        decided_by: str,
        notes: str | None = None,
    ) -> bool:
        """Resolve or abandon an open escalation."""

        if status == EscalationStatus.OPEN:
            raise ValueError("Escalation can only be closed as resolved or abandoned.")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Escalation)
                .where(
                    col(Escalation.escalation_id) == escalation_id,
                    col(Escalation.status) == EscalationStatus.OPEN.value,
                )
                .values(
                    status=status.value,
                    chosen_option=chosen_option,
                    decided_by=decided_by,
                    decision_notes=notes,
                    resolved_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Internals

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: Iterable[JobStatus],
        to: JobStatus,
        event_type: str,
        values: dict[str, Any] | None = None,
        metadata_patch: dict[str, Any] | None = None,
        mutate_metadata: Callable[[dict[str, Any]], None] | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Conditional status change, optionally merging metadata in the same write.

        Returns False when the row is not in one of the expected states.
        """

        expected_values = [status.value for status in expected]
        for _ in range(_MAX_VERSION_RETRIES):
            with Session(self.engine) as session:
                row = session.get(WorkOrder, job_id)
                if row is None:
                    raise WorkOrderNotFoundError(job_id)
                if row.status not in expected_values:
                    return False
                previous = JobStatus(row.status)
                update_values: dict[str, Any] = {
                    "status": to.value,
                    "version": row.version + 1,
                    "updated_at": to_db_datetime(utc_now()),
                    **(values or {}),
                }
                if metadata_patch or mutate_metadata is not None:
                    metadata = _load_json_object(row.metadata_json)
                    metadata.update(metadata_patch or {})
                    if mutate_metadata is not None:
                        mutate_metadata(metadata)
                    update_values["metadata_json"] = _dump_json(metadata)
                result = session.exec(
                    sa_update(WorkOrder)
                    .where(
                        col(WorkOrder.job_id) == job_id,
                        col(WorkOrder.status) == row.status,
                        col(WorkOrder.version) == row.version,
                    )
                    .values(**update_values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    status_from=previous,
                    status_to=to,
                    details=details or {},
                )
                session.commit()
                return True
        raise StateConflictError(
            f"Work order kept changing during {event_type} (job_id={job_id}).",
        )

    def _dependencies(self, session: Session, job_id: str) -> tuple[str, ...]:
        rows = session.exec(
            select(WorkOrderDependency.depends_on_job_id)
            .where(WorkOrderDependency.job_id == job_id)
            .order_by(col(WorkOrderDependency.id).asc()),
        ).all()
        return tuple(rows)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkOrderEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _collect_dependencies(
    explicit: Iterable[str],
    metadata: dict[str, Any],
) -> tuple[str, ...]:
    ordered: list[str] = []
    candidates: list[Any] = list(explicit)
    for key in METADATA_DEPENDENCY_KEYS:
        value = metadata.get(key)
        if isinstance(value, list | tuple):
            candidates.extend(value)
    for candidate in candidates:
        value = str(candidate).strip()
        if value and value not in ordered:
            ordered.append(value)
    return tuple(ordered)


def _error_columns(error: StructuredError) -> dict[str, Any]:
    return {
        "failure_stage": error.stage.value,
        "failure_class": error.failure_class.value,
        "error_summary": error.message,
    }


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_work_order_view(row: WorkOrder, *, dependencies: tuple[str, ...]) -> WorkOrderView:
    return WorkOrderView(
        job_id=row.job_id,
        title=row.title,
        description=row.description,
        target_id=row.target_id,
        status=JobStatus(row.status),
        complexity_score=row.complexity_score,
        estimated_cost_usd=row.estimated_cost_usd,
        attempt=row.attempt,
        selected_agent=row.selected_agent,
        pinned_agent=row.pinned_agent,
        branch_name=row.branch_name,
        pr_url=row.pr_url,
        failure_stage=row.failure_stage,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        metadata=_load_json_object(row.metadata_json),
        dependencies=dependencies,
        version=row.version,
        started_at=to_utc_aware(row.started_at) if row.started_at is not None else None,
        finished_at=to_utc_aware(row.finished_at) if row.finished_at is not None else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_agent_descriptor(row: Agent) -> AgentDescriptor:
    return AgentDescriptor(
        name=row.name,
        provider=row.provider,
        complexity_threshold=row.complexity_threshold,
        input_cost_per_token=row.input_cost_per_token,
        output_cost_per_token=row.output_cost_per_token,
        active=row.active,
    )


def _to_escalation_view(row: Escalation) -> EscalationView:
    options = json.loads(row.options_json) if row.options_json else []
    return EscalationView(
        escalation_id=row.escalation_id,
        job_id=row.job_id,
        trigger=EscalationTrigger(row.trigger_type),
        status=EscalationStatus(row.status),
        context=_load_json_object(row.context_json),
        options=options if isinstance(options, list) else [],
        recommended_option=row.recommended_option,
        chosen_option=row.chosen_option,
        decided_by=row.decided_by,
        decision_notes=row.decision_notes,
        created_at=to_utc_aware(row.created_at),
        resolved_at=to_utc_aware(row.resolved_at) if row.resolved_at is not None else None,
    )
