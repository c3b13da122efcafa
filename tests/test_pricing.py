from __future__ import annotations

import allure
import pytest

from wo_orchestrator.config import PricingSettings
from wo_orchestrator.orchestrator.models import AgentDescriptor, WorkOrderCreate
from wo_orchestrator.orchestrator.pricing import (
    estimate_cost_usd,
    reservation_cost_usd,
    usage_cost_usd,
)
from wo_orchestrator.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Cost Estimation"),
]


@pytest.mark.parametrize(
    ("complexity", "expected"),
    [
        (0.0, 0.10),
        (0.29, 0.10),
        (0.3, 1.00),
        (0.95, 1.00),
        (1.0, 2.50),
    ],
)
def test_estimate_uses_complexity_band(complexity: float, expected: float) -> None:
    assert estimate_cost_usd(complexity, PricingSettings()) == pytest.approx(expected)


def test_custom_bands_and_ceiling() -> None:
    pricing = PricingSettings(cost_bands=((0.5, 0.2),), ceiling_cost_usd=4.0)

    assert estimate_cost_usd(0.4, pricing) == pytest.approx(0.2)
    assert estimate_cost_usd(0.6, pricing) == pytest.approx(4.0)


def test_explicit_estimate_wins_over_band(repository: OrchestratorRepository) -> None:
    explicit = repository.create_work_order(
        WorkOrderCreate(title="t", target_id="T1", complexity_score=0.9, estimated_cost_usd=0.05),
    )
    banded = repository.create_work_order(
        WorkOrderCreate(title="t", target_id="T1", complexity_score=0.9),
    )

    assert reservation_cost_usd(explicit, PricingSettings()) == pytest.approx(0.05)
    assert reservation_cost_usd(banded, PricingSettings()) == pytest.approx(1.00)


def test_usage_cost_from_token_rates() -> None:
    agent = AgentDescriptor(
        name="B",
        provider="test",
        complexity_threshold=0.7,
        input_cost_per_token=0.000003,
        output_cost_per_token=0.000015,
    )

    cost = usage_cost_usd(agent=agent, prompt_tokens=1_000, completion_tokens=200)

    assert cost == pytest.approx(0.006)
    assert usage_cost_usd(agent=agent, prompt_tokens=None, completion_tokens=None) is None
    assert usage_cost_usd(agent=agent, prompt_tokens=None, completion_tokens=100) == pytest.approx(
        0.0015,
    )
