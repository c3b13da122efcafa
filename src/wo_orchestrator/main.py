"""CLI entrypoint for wo-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import rich_click as click

from wo_orchestrator import __version__
from wo_orchestrator.orchestrator.controllers import (
    AgentAddCommand,
    AgentListCommand,
    AgentToggleCommand,
    BudgetStatusCommand,
    EscalationDecisionCommand,
    EscalationListCommand,
    ExecuteCommand,
    InitDbCommand,
    OrchestratorCliController,
    OrderListCommand,
    OrderMutateCommand,
    OrderSubmitCommand,
    RunCommand,
)
from wo_orchestrator.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

JOB_STATUSES = ("pending", "approved", "in_progress", "completed", "failed", "escalated")
ESCALATION_STATUSES = ("open", "resolved", "abandoned")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="wo-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    envvar="WO_ORCHESTRATOR_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Root logger level.",
)
def wo_orchestrator(log_level: str) -> None:
    """Work-order orchestrator CLI.

    Submit and approve work orders, register agents, then `run` poll cycles
    or `execute` a single work order.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@wo_orchestrator.command("init-db")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def init_db(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.init_db(InitDbCommand(db_path=db_path)))


@wo_orchestrator.group()
def agents() -> None:
    """Agent roster commands."""


@agents.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Unique agent name.")
@click.option("--provider", required=True, help="Provider label, for example anthropic.")
@click.option(
    "--threshold",
    type=click.FloatRange(min=0.0, max=1.0),
    required=True,
    help="Highest complexity score the agent handles confidently.",
)
@click.option(
    "--input-cost",
    type=click.FloatRange(min=0.0),
    default=0.0,
    show_default=True,
    help="USD per prompt token.",
)
@click.option(
    "--output-cost",
    type=click.FloatRange(min=0.0),
    default=0.0,
    show_default=True,
    help="USD per completion token.",
)
def agents_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    provider: str,
    threshold: float,
    input_cost: float,
    output_cost: float,
) -> None:
    """Register or update an agent."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.add_agent,
            AgentAddCommand(
                db_path=db_path,
                name=name,
                provider=provider,
                complexity_threshold=threshold,
                input_cost_per_token=input_cost,
                output_cost_per_token=output_cost,
            ),
        ),
    )


@agents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive agents.")
def agents_list(db_path: Path | None, include_inactive: bool) -> None:
    """List agents ordered by routing threshold."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_agents(
            AgentListCommand(db_path=db_path, include_inactive=include_inactive),
        ),
    )


@agents.command("deactivate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def agents_deactivate(db_path: Path | None, name: str) -> None:
    """Remove an agent from routing without deleting it."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.toggle_agent(
            AgentToggleCommand(db_path=db_path, name=name, active=False),
        ),
    )


@agents.command("activate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def agents_activate(db_path: Path | None, name: str) -> None:
    """Return a deactivated agent to routing."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.toggle_agent(
            AgentToggleCommand(db_path=db_path, name=name, active=True),
        ),
    )


@wo_orchestrator.group()
def orders() -> None:
    """Work-order commands."""


@orders.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Short work-order title.")
@click.option("--target", "target_id", required=True, help="Target the change applies to.")
@click.option(
    "--complexity",
    type=click.FloatRange(min=0.0, max=1.0),
    required=True,
    help="Complexity score used for routing.",
)
@click.option("--description", default=None, help="Longer description passed to the agent.")
@click.option("--job-id", default=None, help="Explicit work-order id (default: generated).")
@click.option(
    "--estimated-cost",
    type=click.FloatRange(min=0.0),
    default=None,
    help="Reservation estimate in USD (default: complexity band).",
)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Work-order id that must complete first. Can be repeated.",
)
@click.option("--approve", is_flag=True, help="Submit directly as approved.")
def orders_submit(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    target_id: str,
    complexity: float,
    description: str | None,
    job_id: str | None,
    estimated_cost: float | None,
    dependencies: tuple[str, ...],
    approve: bool,
) -> None:
    """Submit a work order."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.submit_order,
            OrderSubmitCommand(
                db_path=db_path,
                title=title,
                target_id=target_id,
                complexity_score=complexity,
                description=description,
                job_id=job_id,
                estimated_cost_usd=estimated_cost,
                dependencies=dependencies,
                approve=approve,
            ),
        ),
    )


@orders.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def orders_approve(db_path: Path | None, job_id: str) -> None:
    """Approve a pending work order for execution."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.approve_order,
            OrderMutateCommand(db_path=db_path, job_id=job_id),
        ),
    )


@orders.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(JOB_STATUSES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max work orders to show.",
)
def orders_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent work orders."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_orders(
            OrderListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@orders.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def orders_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one work order with its events and escalations."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_order(OrderMutateCommand(db_path=db_path, job_id=job_id)),
    )


@wo_orchestrator.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--cycles",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of poll cycles to run.",
)
@click.option(
    "--interval",
    type=click.FloatRange(min=0.0),
    default=0.0,
    show_default=True,
    help="Seconds to wait between cycles.",
)
@click.option(
    "--echo-editor",
    "use_echo_editor",
    is_flag=True,
    help="Apply changes with the bundled echo editor instead of the configured command.",
)
def run(db_path: Path | None, cycles: int, interval: float, use_echo_editor: bool) -> None:
    """Run poll cycles with the simulated generator and publisher.

    Each cycle dispatches eligible work orders and waits for them to finish.
    """

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.run,
            RunCommand(
                db_path=db_path,
                cycles=cycles,
                interval_seconds=interval,
                use_echo_editor=use_echo_editor,
            ),
        ),
    )


@wo_orchestrator.command("execute")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--echo-editor",
    "use_echo_editor",
    is_flag=True,
    help="Apply changes with the bundled echo editor instead of the configured command.",
)
@click.argument("job_id")
def execute(db_path: Path | None, use_echo_editor: bool, job_id: str) -> None:
    """Execute one approved work order now, printing its progress."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.execute,
            ExecuteCommand(db_path=db_path, job_id=job_id, use_echo_editor=use_echo_editor),
        ),
    )


@wo_orchestrator.group()
def budget() -> None:
    """Budget ledger commands."""


@budget.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def budget_status(db_path: Path | None) -> None:
    """Show daily and monthly spend with threshold alerts."""

    _emit_lines(ORCHESTRATOR_CONTROLLER.budget_status(BudgetStatusCommand(db_path=db_path)))


@wo_orchestrator.group()
def escalations() -> None:
    """Escalation review commands."""


@escalations.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(ESCALATION_STATUSES),
    default="open",
    show_default=True,
    help="Escalation status filter.",
)
@click.option("--job-id", default=None, help="Only escalations of this work order.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max escalations to show.",
)
def escalations_list(db_path: Path | None, status: str, job_id: str | None, limit: int) -> None:
    """List escalations with their ranked options."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_escalations(
            EscalationListCommand(db_path=db_path, status=status, job_id=job_id, limit=limit),
        ),
    )


@escalations.command("resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--option", "option_id", required=True, help="Chosen option id, for example A.")
@click.option("--by", "decided_by", default="operator", show_default=True, help="Decision maker.")
@click.option("--notes", default=None, help="Free-form decision notes.")
@click.argument("escalation_id")
def escalations_resolve(
    db_path: Path | None,
    option_id: str,
    decided_by: str,
    notes: str | None,
    escalation_id: str,
) -> None:
    """Resolve an open escalation with one of its options."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.resolve_escalation,
            EscalationDecisionCommand(
                db_path=db_path,
                escalation_id=escalation_id,
                decided_by=decided_by,
                option_id=option_id,
                notes=notes,
            ),
        ),
    )


@escalations.command("abandon")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--by", "decided_by", default="operator", show_default=True, help="Decision maker.")
@click.option("--notes", default=None, help="Free-form decision notes.")
@click.argument("escalation_id")
def escalations_abandon(
    db_path: Path | None,
    decided_by: str,
    notes: str | None,
    escalation_id: str,
) -> None:
    """Abandon an open escalation and fail its work order."""

    _emit_lines(
        _guarded(
            ORCHESTRATOR_CONTROLLER.abandon_escalation,
            EscalationDecisionCommand(
                db_path=db_path,
                escalation_id=escalation_id,
                decided_by=decided_by,
                notes=notes,
            ),
        ),
    )


def _guarded(handler: Callable[[Any], list[str]], command: object) -> list[str]:
    try:
        return handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    wo_orchestrator()
