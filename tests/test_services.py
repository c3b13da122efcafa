from __future__ import annotations

import allure
import pytest

from wo_orchestrator.orchestrator.models import JobStatus
from wo_orchestrator.orchestrator.repository import OrchestratorRepository
from wo_orchestrator.orchestrator.services import (
    RegisterAgent,
    SubmitWorkOrder,
    WorkOrderService,
)

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Work Order Intake"),
]


def test_submit_trims_input_and_defaults_to_pending(repository: OrchestratorRepository) -> None:
    service = WorkOrderService(repository=repository)

    work_order = service.submit(
        SubmitWorkOrder(title="  Add login  ", target_id=" T1 ", complexity_score=0.4),
    )

    assert work_order.title == "Add login"
    assert work_order.target_id == "T1"
    assert work_order.status == JobStatus.PENDING
    assert service.approve(work_order.job_id).status == JobStatus.APPROVED


def test_submit_can_approve_directly(repository: OrchestratorRepository) -> None:
    service = WorkOrderService(repository=repository)

    work_order = service.submit(
        SubmitWorkOrder(title="t", target_id="T1", complexity_score=0.1, approve=True),
    )

    assert work_order.status == JobStatus.APPROVED


@pytest.mark.parametrize(
    ("command", "message"),
    [
        (SubmitWorkOrder(title=" ", target_id="T1", complexity_score=0.1), "title"),
        (SubmitWorkOrder(title="t", target_id="", complexity_score=0.1), "target"),
        (SubmitWorkOrder(title="t", target_id="T1", complexity_score=1.2), "within"),
        (
            SubmitWorkOrder(title="t", target_id="T1", complexity_score=0.1, estimated_cost_usd=-1),
            "non-negative",
        ),
    ],
)
def test_submit_validates_input(
    repository: OrchestratorRepository,
    command: SubmitWorkOrder,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        WorkOrderService(repository=repository).submit(command)


def test_register_agent_validates_and_stores(repository: OrchestratorRepository) -> None:
    service = WorkOrderService(repository=repository)

    agent = service.register_agent(
        RegisterAgent(name=" fast ", provider="test", complexity_threshold=0.3),
    )

    assert agent.name == "fast"
    assert [item.name for item in repository.list_agents()] == ["fast"]
    with pytest.raises(ValueError, match="threshold"):
        service.register_agent(RegisterAgent(name="x", provider="test", complexity_threshold=2))
    with pytest.raises(ValueError, match="Per-token"):
        service.register_agent(
            RegisterAgent(
                name="x",
                provider="test",
                complexity_threshold=0.5,
                input_cost_per_token=-0.1,
            ),
        )
