"""Cost estimation helpers for work-order reservations."""

from __future__ import annotations

from wo_orchestrator.config import PricingSettings
from wo_orchestrator.orchestrator.models import AgentDescriptor, WorkOrderView


def estimate_cost_usd(complexity_score: float, pricing: PricingSettings) -> float:
    """Reservation estimate from the complexity band the score falls into."""

    for upper_bound, cost in pricing.cost_bands:
        if complexity_score < upper_bound:
            return cost
    return pricing.ceiling_cost_usd


def reservation_cost_usd(work_order: WorkOrderView, pricing: PricingSettings) -> float:
    """Explicit per-order estimate wins over the complexity band."""

    if work_order.estimated_cost_usd is not None:
        return work_order.estimated_cost_usd
    return estimate_cost_usd(work_order.complexity_score, pricing)


def usage_cost_usd(
    *,
    agent: AgentDescriptor,
    prompt_tokens: int | None,
    completion_tokens: int | None,
) -> float | None:
    """Actual generation cost from token usage and the agent's per-token rates."""

    if prompt_tokens is None and completion_tokens is None:
        return None
    return (prompt_tokens or 0) * agent.input_cost_per_token + (
        completion_tokens or 0
    ) * agent.output_cost_per_token
