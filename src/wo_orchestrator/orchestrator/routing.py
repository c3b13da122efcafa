"""Cheapest-capable agent routing and the retry ladder."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from wo_orchestrator.orchestrator.errors import RoutingError
from wo_orchestrator.orchestrator.models import (
    AgentDescriptor,
    RetryStrategy,
    RoutingDecision,
)

logger = logging.getLogger(__name__)

ROUTING_SCHEMA_VERSION = 1
DEFAULT_MAX_ATTEMPTS = 3


def capability_order(roster: Iterable[AgentDescriptor]) -> list[AgentDescriptor]:
    """Active agents from least to most capable, fully ordered.

    Ties on threshold break on input-token cost, then name.
    """

    return sorted(
        (agent for agent in roster if agent.active),
        key=lambda agent: (agent.complexity_threshold, agent.input_cost_per_token, agent.name),
    )


def route(complexity_score: float, roster: Iterable[AgentDescriptor]) -> RoutingDecision:
    """Pick the active agent with the smallest threshold that covers the score.

    When no threshold covers the score, the agent with the largest threshold is
    returned and the decision is flagged `below_confidence`.
    """

    ordered = capability_order(roster)
    if not ordered:
        raise RoutingError("No active agents available for routing.")

    capable = [agent for agent in ordered if agent.complexity_threshold >= complexity_score]
    if capable:
        selected = capable[0]
        reason = (
            f"Cheapest capable agent: threshold {selected.complexity_threshold:.2f} covers "
            f"complexity {complexity_score:.2f} ({len(capable)} capable of {len(ordered)} active)"
        )
        return RoutingDecision(
            agent=selected,
            reason=reason,
            complexity_score=complexity_score,
        )

    ceiling = max(agent.complexity_threshold for agent in ordered)
    selected = next(agent for agent in ordered if agent.complexity_threshold == ceiling)
    return RoutingDecision(
        agent=selected,
        reason=(
            f"No agent covers complexity {complexity_score:.2f}; using highest threshold "
            f"{selected.complexity_threshold:.2f}"
        ),
        complexity_score=complexity_score,
        below_confidence=True,
    )


class RoutingPolicy:
    """Advisory routing decisions; never executes anything itself."""

    def __init__(self, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        if max_attempts < 2:
            raise ValueError("max_attempts must be >= 2 to allow an agent switch.")
        self.max_attempts = max_attempts

    def route(
        self,
        complexity_score: float,
        roster: Sequence[AgentDescriptor],
        *,
        pinned_agent: str | None = None,
    ) -> RoutingDecision:
        """Route a work order, honouring an agent pinned by the retry ladder."""

        if pinned_agent is not None:
            for agent in capability_order(roster):
                if agent.name == pinned_agent:
                    return RoutingDecision(
                        agent=agent,
                        reason=f"Pinned by retry strategy to {agent.name}",
                        complexity_score=complexity_score,
                        below_confidence=agent.complexity_threshold < complexity_score,
                    )
            logger.warning("Pinned agent %s is not active; falling back to routing", pinned_agent)
        return route(complexity_score, roster)

    def retry_strategy(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        previous_agent: str | None,
        attempt_number: int,
        failure_reason: str,
        roster: Sequence[AgentDescriptor],
        complexity_score: float = 0.0,
    ) -> RetryStrategy:
        """Decide the agent for the upcoming attempt `attempt_number` (1-based).

        Attempt 1 uses the primary route; later attempts climb to the next more
        capable agent distinct from the previous one; reaching the attempt ceiling
        forces escalation.
        """

        if attempt_number >= self.max_attempts:
            return RetryStrategy(
                next_agent=None,
                should_escalate=True,
                reason=(
                    f"Attempt {attempt_number} reaches ceiling {self.max_attempts} "
                    f"after: {failure_reason}"
                ),
            )

        ordered = capability_order(roster)
        if not ordered:
            return RetryStrategy(
                next_agent=None,
                should_escalate=True,
                reason="No active agents available for retry.",
            )

        primary = route(complexity_score, ordered).agent
        if attempt_number <= 1:
            return RetryStrategy(
                next_agent=primary,
                should_escalate=False,
                reason="Primary route",
            )

        previous_name = previous_agent or primary.name
        index = next(
            (position for position, agent in enumerate(ordered) if agent.name == previous_name),
            None,
        )
        more_capable = ordered[index + 1 :] if index is not None else ordered
        candidates = [agent for agent in more_capable if agent.name != previous_name]
        if not candidates:
            candidates = [agent for agent in reversed(ordered) if agent.name != previous_name]
        if not candidates:
            logger.info("No alternative agent for %s after %s", job_id, previous_name)
            return RetryStrategy(
                next_agent=None,
                should_escalate=True,
                reason=f"No agent distinct from {previous_name} is available.",
            )

        next_agent = candidates[0]
        logger.info(
            "Retry ladder for %s: attempt %d switches %s -> %s (%s)",
            job_id,
            attempt_number,
            previous_name,
            next_agent.name,
            failure_reason,
        )
        return RetryStrategy(
            next_agent=next_agent,
            should_escalate=False,
            reason=f"Switching from {previous_name} to {next_agent.name} after: {failure_reason}",
        )
