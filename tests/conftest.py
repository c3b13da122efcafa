"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from wo_orchestrator.config import Settings
from wo_orchestrator.orchestrator.models import AgentDescriptor
from wo_orchestrator.orchestrator.repository import OrchestratorRepository

_ECHO_EDITOR_COMMAND_TEMPLATE = (
    f"{sys.executable} -m wo_orchestrator.orchestrator.backend.echo_editor "
    "--payload-file {payload_file} --workdir {workdir}"
)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def two_agents(repository: OrchestratorRepository) -> tuple[AgentDescriptor, AgentDescriptor]:
    """Agent A covers complexity up to 0.3, agent B up to 0.7."""

    agent_a = repository.upsert_agent(
        AgentDescriptor(
            name="A",
            provider="test",
            complexity_threshold=0.3,
            input_cost_per_token=0.000001,
            output_cost_per_token=0.000002,
        ),
    )
    agent_b = repository.upsert_agent(
        AgentDescriptor(
            name="B",
            provider="test",
            complexity_threshold=0.7,
            input_cost_per_token=0.000003,
            output_cost_per_token=0.000015,
        ),
    )
    return agent_a, agent_b


@pytest.fixture()
def echo_editor(monkeypatch, tmp_path: Path):
    """Monkeypatch Settings.from_env to apply changes with the echo editor."""
    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        applier = replace(
            settings.applier,
            command_template=_ECHO_EDITOR_COMMAND_TEMPLATE,
            workdir_root=tmp_path / "workspaces",
        )
        return replace(settings, applier=applier)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
    return tmp_path / "workspaces"
