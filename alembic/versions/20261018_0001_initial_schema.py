"""Create work-order, agent, cost ledger and escalation tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_orders",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("complexity_score", sa.Float(), nullable=False),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("selected_agent", sa.String(), nullable=True),
        sa.Column("pinned_agent", sa.String(), nullable=True),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("pr_url", sa.String(), nullable=True),
        sa.Column("failure_stage", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_work_orders_target_id", "work_orders", ["target_id"], unique=False)
    op.create_index("ix_work_orders_status", "work_orders", ["status"], unique=False)
    op.create_index(
        "ix_work_orders_failure_class",
        "work_orders",
        ["failure_class"],
        unique=False,
    )
    op.create_index(
        "idx_work_orders_status_created",
        "work_orders",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "work_order_dependencies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("depends_on_job_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["work_orders.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "job_id",
            "depends_on_job_id",
            name="uq_work_order_dependencies_pair",
        ),
    )
    op.create_index(
        "ix_work_order_dependencies_job_id",
        "work_order_dependencies",
        ["job_id"],
        unique=False,
    )
    op.create_index(
        "ix_work_order_dependencies_depends_on_job_id",
        "work_order_dependencies",
        ["depends_on_job_id"],
        unique=False,
    )

    op.create_table(
        "work_order_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["work_orders.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_order_events_job_id", "work_order_events", ["job_id"], unique=False)
    op.create_index(
        "ix_work_order_events_event_type",
        "work_order_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_work_order_events_job_time",
        "work_order_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "agents",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("complexity_threshold", sa.Float(), nullable=False),
        sa.Column("input_cost_per_token", sa.Float(), nullable=False),
        sa.Column("output_cost_per_token", sa.Float(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )
    op.create_index(
        "idx_agents_active_threshold",
        "agents",
        ["active", "complexity_threshold"],
        unique=False,
    )

    op.create_table(
        "cost_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("service_tag", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("reservation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_cost_records_service_tag", "cost_records", ["service_tag"], unique=False)
    op.create_index("ix_cost_records_job_id", "cost_records", ["job_id"], unique=False)
    op.create_index(
        "ix_cost_records_reservation_id",
        "cost_records",
        ["reservation_id"],
        unique=False,
    )
    op.create_index("idx_cost_records_time", "cost_records", ["created_at"], unique=False)

    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("trigger_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False),
        sa.Column("options_json", sa.Text(), nullable=False),
        sa.Column("recommended_option", sa.String(), nullable=True),
        sa.Column("chosen_option", sa.String(), nullable=True),
        sa.Column("decided_by", sa.String(), nullable=True),
        sa.Column("decision_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["work_orders.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index("ix_escalations_job_id", "escalations", ["job_id"], unique=False)
    op.create_index("ix_escalations_status", "escalations", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_escalations_status", table_name="escalations")
    op.drop_index("ix_escalations_job_id", table_name="escalations")
    op.drop_table("escalations")
    op.drop_index("idx_cost_records_time", table_name="cost_records")
    op.drop_index("ix_cost_records_reservation_id", table_name="cost_records")
    op.drop_index("ix_cost_records_job_id", table_name="cost_records")
    op.drop_index("ix_cost_records_service_tag", table_name="cost_records")
    op.drop_table("cost_records")
    op.drop_index("idx_agents_active_threshold", table_name="agents")
    op.drop_table("agents")
    op.drop_index("idx_work_order_events_job_time", table_name="work_order_events")
    op.drop_index("ix_work_order_events_event_type", table_name="work_order_events")
    op.drop_index("ix_work_order_events_job_id", table_name="work_order_events")
    op.drop_table("work_order_events")
    op.drop_index(
        "ix_work_order_dependencies_depends_on_job_id",
        table_name="work_order_dependencies",
    )
    op.drop_index("ix_work_order_dependencies_job_id", table_name="work_order_dependencies")
    op.drop_table("work_order_dependencies")
    op.drop_index("idx_work_orders_status_created", table_name="work_orders")
    op.drop_index("ix_work_orders_failure_class", table_name="work_orders")
    op.drop_index("ix_work_orders_status", table_name="work_orders")
    op.drop_index("ix_work_orders_target_id", table_name="work_orders")
    op.drop_table("work_orders")
