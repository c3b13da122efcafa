from __future__ import annotations

import allure
import pytest

from wo_orchestrator.orchestrator.errors import RoutingError
from wo_orchestrator.orchestrator.models import AgentDescriptor
from wo_orchestrator.orchestrator.routing import RoutingPolicy, capability_order, route

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Routing Policy"),
]


def _agent(name: str, threshold: float, *, input_cost: float = 0.0, active: bool = True):
    return AgentDescriptor(
        name=name,
        provider="test",
        complexity_threshold=threshold,
        input_cost_per_token=input_cost,
        active=active,
    )


ROSTER = (_agent("A", 0.3), _agent("B", 0.7))


@pytest.mark.parametrize(
    ("complexity", "expected", "below_confidence"),
    [
        (0.2, "A", False),
        (0.3, "A", False),
        (0.5, "B", False),
        (0.9, "B", True),
    ],
)
def test_route_picks_cheapest_capable_agent(
    complexity: float,
    expected: str,
    below_confidence: bool,
) -> None:
    decision = route(complexity, ROSTER)

    assert decision.agent.name == expected
    assert decision.below_confidence is below_confidence
    assert decision.complexity_score == complexity


def test_route_is_deterministic_for_fixed_roster() -> None:
    roster = [_agent("zeta", 0.5), _agent("alpha", 0.5), _agent("mid", 0.5, input_cost=0.1)]

    picks = {route(0.4, roster).agent.name for _ in range(20)}
    reversed_picks = {route(0.4, list(reversed(roster))).agent.name for _ in range(20)}

    assert picks == {"alpha"}
    assert reversed_picks == {"alpha"}


def test_route_breaks_threshold_ties_on_input_cost_before_name() -> None:
    roster = [_agent("alpha", 0.5, input_cost=0.2), _agent("beta", 0.5, input_cost=0.1)]

    assert route(0.4, roster).agent.name == "beta"


def test_route_ignores_inactive_agents() -> None:
    roster = [_agent("A", 0.3, active=False), _agent("B", 0.7)]

    assert route(0.2, roster).agent.name == "B"
    assert [agent.name for agent in capability_order(roster)] == ["B"]


def test_route_without_active_agents_raises() -> None:
    with pytest.raises(RoutingError, match="No active agents"):
        route(0.2, [_agent("A", 0.3, active=False)])


def test_retry_ladder_switches_agent_then_escalates() -> None:
    policy = RoutingPolicy(max_attempts=3)

    first = policy.retry_strategy(
        job_id="J1",
        previous_agent=None,
        attempt_number=1,
        failure_reason="-",
        roster=ROSTER,
        complexity_score=0.2,
    )
    second = policy.retry_strategy(
        job_id="J1",
        previous_agent=first.next_agent.name if first.next_agent else None,
        attempt_number=2,
        failure_reason="agent returned unusable output",
        roster=ROSTER,
        complexity_score=0.2,
    )
    third = policy.retry_strategy(
        job_id="J1",
        previous_agent="B",
        attempt_number=3,
        failure_reason="agent returned unusable output",
        roster=ROSTER,
        complexity_score=0.2,
    )

    assert first.next_agent is not None and first.next_agent.name == "A"
    assert not first.should_escalate
    assert second.next_agent is not None and second.next_agent.name == "B"
    assert not second.should_escalate
    assert third.should_escalate
    assert third.next_agent is None


def test_retry_from_most_capable_agent_falls_back_to_another_agent() -> None:
    policy = RoutingPolicy(max_attempts=3)

    strategy = policy.retry_strategy(
        job_id="J2",
        previous_agent="B",
        attempt_number=2,
        failure_reason="patch did not apply",
        roster=ROSTER,
        complexity_score=0.9,
    )

    assert strategy.next_agent is not None
    assert strategy.next_agent.name == "A"


def test_retry_with_single_agent_escalates() -> None:
    policy = RoutingPolicy(max_attempts=5)

    strategy = policy.retry_strategy(
        job_id="J3",
        previous_agent="A",
        attempt_number=2,
        failure_reason="boom",
        roster=[_agent("A", 0.3)],
    )

    assert strategy.should_escalate
    assert "distinct" in strategy.reason


def test_pinned_agent_overrides_primary_route() -> None:
    policy = RoutingPolicy()

    pinned = policy.route(0.2, ROSTER, pinned_agent="B")
    missing = policy.route(0.2, ROSTER, pinned_agent="gone")

    assert pinned.agent.name == "B"
    assert "Pinned" in pinned.reason
    assert missing.agent.name == "A"


def test_policy_requires_room_for_an_agent_switch() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RoutingPolicy(max_attempts=1)
