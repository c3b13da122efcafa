"""SQLModel ORM tables for the work-order store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkOrder(SQLModel, table=True):
    __tablename__ = "work_orders"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_orders_status_created", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    target_id: str = Field(index=True)
    status: str = Field(index=True)
    complexity_score: float
    estimated_cost_usd: float | None = None
    attempt: int = Field(default=0)
    selected_agent: str | None = None
    pinned_agent: str | None = None
    branch_name: str | None = None
    pr_url: str | None = None
    failure_stage: str | None = None
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    version: int = Field(default=1)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkOrderDependency(SQLModel, table=True):
    __tablename__ = "work_order_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "job_id",
            "depends_on_job_id",
            name="uq_work_order_dependencies_pair",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("work_orders.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    depends_on_job_id: str = Field(index=True)


class WorkOrderEvent(SQLModel, table=True):
    __tablename__ = "work_order_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_order_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("work_orders.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Agent(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agents_active_threshold", "active", "complexity_threshold"),)

    name: str = Field(primary_key=True)
    provider: str
    complexity_threshold: float
    input_cost_per_token: float = 0.0
    output_cost_per_token: float = 0.0
    active: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CostRecord(SQLModel, table=True):
    __tablename__ = "cost_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_cost_records_time", "created_at"),)

    record_id: str = Field(primary_key=True)
    service_tag: str = Field(index=True)
    kind: str
    cost_usd: float
    job_id: str | None = Field(default=None, index=True)
    reservation_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Escalation(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]

    escalation_id: str = Field(primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("work_orders.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    trigger_type: str
    status: str = Field(index=True)
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    options_json: str = Field(sa_column=Column(Text, nullable=False))
    recommended_option: str | None = None
    chosen_option: str | None = None
    decided_by: str | None = None
    decision_notes: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
