from __future__ import annotations

import re
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from wo_orchestrator.main import wo_orchestrator

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Work Orders, Runs, Escalations"),
]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in ("WO_ORCHESTRATOR_APPLIER_COMMAND", "WO_ORCHESTRATOR_DB_PATH"):
        monkeypatch.delenv(name, raising=False)


def _invoke(runner: CliRunner, *args: str):
    result = runner.invoke(wo_orchestrator, list(args))
    return result


def _register_agents(runner: CliRunner, db_path: Path) -> None:
    for name, threshold in (("A", "0.3"), ("B", "0.7")):
        result = _invoke(
            runner,
            "agents",
            "add",
            "--db-path",
            str(db_path),
            "--name",
            name,
            "--provider",
            "test",
            "--threshold",
            threshold,
            "--input-cost",
            "0.000001",
            "--output-cost",
            "0.000002",
        )
        assert result.exit_code == 0, result.output
        assert f"Agent registered: name={name}" in result.output


def _submit(runner: CliRunner, db_path: Path, job_id: str, *extra: str):
    return _invoke(
        runner,
        "orders",
        "submit",
        "--db-path",
        str(db_path),
        "--title",
        f"Feature {job_id}",
        "--target",
        "T1",
        "--job-id",
        job_id,
        *extra,
    )


def test_cli_runs_dependent_work_orders_across_cycles(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    init = _invoke(runner, "init-db", "--db-path", str(db_path))
    assert init.exit_code == 0, init.output
    assert "Database ready" in init.output
    _register_agents(runner, db_path)

    listed_agents = _invoke(runner, "agents", "list", "--db-path", str(db_path))
    assert "Agents: 2" in listed_agents.output

    j1 = _submit(runner, db_path, "J1", "--complexity", "0.2", "--approve")
    assert j1.exit_code == 0, j1.output
    assert "status=approved" in j1.output
    j2 = _submit(
        runner,
        db_path,
        "J2",
        "--complexity",
        "0.8",
        "--depends-on",
        "J1",
        "--approve",
    )
    assert "dependencies=J1" in j2.output

    run = _invoke(runner, "run", "--db-path", str(db_path), "--cycles", "2")
    assert run.exit_code == 0, run.output
    assert "Cycle 1: scanned=2 dispatched=1 ineligible=1" in run.output
    assert "Cycle 2: scanned=1 dispatched=1 ineligible=0" in run.output
    assert "Engine summary: executed=2 failed=0" in run.output

    inspect = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), "J2")
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "Agent: B" in inspect.output
    assert "Pull request: https://git.example.invalid/T1/pull/" in inspect.output

    completed = _invoke(
        runner,
        "orders",
        "list",
        "--db-path",
        str(db_path),
        "--status",
        "completed",
    )
    assert "Work orders: 2" in completed.output

    budget = _invoke(runner, "budget", "status", "--db-path", str(db_path))
    assert budget.exit_code == 0, budget.output
    assert "Daily: spent=$0.01" in budget.output
    assert "Monthly: spent=" in budget.output
    assert "Alerts: none" in budget.output


def test_cli_approve_rules_and_agent_toggle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    pending = _submit(runner, db_path, "J1", "--complexity", "0.5")
    assert "status=pending" in pending.output

    approved = _invoke(runner, "orders", "approve", "--db-path", str(db_path), "J1")
    assert approved.exit_code == 0, approved.output
    assert "Work order approved: J1" in approved.output

    again = _invoke(runner, "orders", "approve", "--db-path", str(db_path), "J1")
    assert again.exit_code != 0
    assert "Only pending work orders can be approved" in again.output

    missing = _invoke(runner, "orders", "inspect", "--db-path", str(db_path), "nope")
    assert "Work order not found: nope" in missing.output

    _register_agents(runner, db_path)
    deactivated = _invoke(runner, "agents", "deactivate", "--db-path", str(db_path), "A")
    assert "Agent deactivated: A" in deactivated.output
    unknown = _invoke(runner, "agents", "activate", "--db-path", str(db_path), "Z")
    assert "Agent not found: Z" in unknown.output
    active_only = _invoke(runner, "agents", "list", "--db-path", str(db_path))
    assert "Agents: 1" in active_only.output
    everything = _invoke(runner, "agents", "list", "--db-path", str(db_path), "--all")
    assert "active=no" in everything.output


def test_cli_rejects_out_of_range_complexity(tmp_path: Path) -> None:
    result = _submit(CliRunner(), tmp_path / "cli.db", "J1", "--complexity", "1.5")

    assert result.exit_code == 2
    assert "complexity" in result.output.lower()


def test_cli_execute_applies_changes_with_echo_editor(tmp_path: Path, echo_editor: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _register_agents(runner, db_path)
    _submit(runner, db_path, "J1", "--complexity", "0.2", "--approve")

    result = _invoke(runner, "execute", "--db-path", str(db_path), "J1")

    assert result.exit_code == 0, result.output
    assert "started" in result.output
    assert "[100%] completed" in result.output
    assert "Result: completed status=completed agent=A" in result.output
    written = echo_editor / "T1" / "changes" / "J1.md"
    assert written.read_text("utf-8").startswith("# Feature J1")


def test_cli_escalation_review_flow(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv(
        "WO_ORCHESTRATOR_APPLIER_COMMAND",
        f"{sys.executable} -c 'import sys; sys.exit(1)' {{payload_file}}",
    )
    monkeypatch.setenv("WO_ORCHESTRATOR_WORKDIR_ROOT", str(tmp_path / "workspaces"))
    runner = CliRunner()
    _register_agents(runner, db_path)
    _submit(runner, db_path, "J1", "--complexity", "0.2", "--approve")

    first = _invoke(runner, "execute", "--db-path", str(db_path), "J1")
    assert "Result: retry_scheduled status=approved agent=A" in first.output
    assert "Error: apply/apply_error" in first.output

    second = _invoke(runner, "execute", "--db-path", str(db_path), "J1")
    assert "Result: escalated status=escalated agent=B" in second.output
    match = re.search(r"Escalation: (\S+)", second.output)
    assert match is not None
    escalation_id = match.group(1)

    listed = _invoke(runner, "escalations", "list", "--db-path", str(db_path))
    assert "Escalations: 1" in listed.output
    assert f"{escalation_id} job=J1 trigger=exhausted_retries" in listed.output
    assert "A: Retry with the most capable agent" in listed.output

    unknown_option = _invoke(
        runner,
        "escalations",
        "resolve",
        "--db-path",
        str(db_path),
        "--option",
        "D",
        escalation_id,
    )
    assert unknown_option.exit_code != 0
    assert "is not offered" in unknown_option.output

    resolved = _invoke(
        runner,
        "escalations",
        "resolve",
        "--db-path",
        str(db_path),
        "--option",
        "A",
        "--by",
        "lead",
        escalation_id,
    )
    assert resolved.exit_code == 0, resolved.output
    assert f"Escalation resolved: {escalation_id} option=A" in resolved.output
    assert "Work order J1 is now approved" in resolved.output

    abandoned = _invoke(
        runner,
        "escalations",
        "abandon",
        "--db-path",
        str(db_path),
        escalation_id,
    )
    assert abandoned.exit_code != 0
    assert "Open escalation not found" in abandoned.output

    closed = _invoke(
        runner,
        "escalations",
        "list",
        "--db-path",
        str(db_path),
        "--status",
        "resolved",
    )
    assert "Escalations: 1" in closed.output
