"""Escalation trigger classification and ranked resolution options."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from wo_orchestrator.orchestrator.models import (
    EscalationCreate,
    EscalationTrigger,
    FailureClass,
    ResolutionOption,
    RiskLevel,
    StructuredError,
    WorkOrderView,
)

BUDGET_OVERRUN_USD = 50.0
ABORT_COST_THRESHOLD_USD = 20.0
ABORT_FAILURE_THRESHOLD = 3
MAX_CONFIDENCE = 0.95

RETRY_OPTION = "A"


@dataclass(slots=True, frozen=True)
class _OptionTemplate:
    option_id: str
    key: str
    title: str
    description: str
    cost_multiplier: float
    success_probability: float
    risk: RiskLevel


_OPTION_TEMPLATES: dict[str, _OptionTemplate] = {
    "A": _OptionTemplate(
        option_id="A",
        key="retry_different_approach",
        title="Retry with the most capable agent",
        description=(
            "Re-approve the work order pinned to the highest-threshold agent with a fresh "
            "attempt budget and the failure history attached."
        ),
        cost_multiplier=1.5,
        success_probability=0.65,
        risk=RiskLevel.LOW,
    ),
    "B": _OptionTemplate(
        option_id="B",
        key="pivot_solution",
        title="Pivot the technical approach",
        description="Rework the work order around an alternative, simpler solution.",
        cost_multiplier=2.0,
        success_probability=0.75,
        risk=RiskLevel.MEDIUM,
    ),
    "C": _OptionTemplate(
        option_id="C",
        key="amend_upstream",
        title="Amend upstream work orders",
        description="Fix the root cause in an earlier dependency, then retry this work order.",
        cost_multiplier=1.2,
        success_probability=0.80,
        risk=RiskLevel.MEDIUM,
    ),
    "D": _OptionTemplate(
        option_id="D",
        key="abort_redesign",
        title="Abort and redesign",
        description="Stop this work order and send the feature back for re-decomposition.",
        cost_multiplier=3.0,
        success_probability=0.90,
        risk=RiskLevel.HIGH,
    ),
}

_FAILURE_PATTERNS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("syntax", "compilation", "compile", "import error"), "Build or compilation errors"),
    (("contract", "breaking"), "Contract violations"),
    (("test", "assertion"), "Test failures"),
    (("timeout", "timed out", "exceeded"), "Resource/timeout issues"),
    (("conflict", "merge"), "Merge conflicts"),
)


@dataclass(slots=True)
class Recommendation:
    """Recommended resolution and how much to trust it."""

    option_id: str
    reasoning: str
    confidence: float
    failure_pattern: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "option_id": self.option_id,
            "reasoning": self.reasoning,
            "confidence": round(self.confidence, 4),
            "failure_pattern": self.failure_pattern,
        }


def classify_trigger(
    *,
    error: StructuredError,
    total_cost_usd: float,
) -> EscalationTrigger:
    """Pick the escalation trigger that best explains why automation stopped."""

    message = error.message.lower()
    if total_cost_usd > BUDGET_OVERRUN_USD:
        return EscalationTrigger.BUDGET_OVERRUN
    if "requirement" in message or "contract" in message:
        return EscalationTrigger.CONFLICTING_REQUIREMENTS
    if error.failure_class == FailureClass.APPLY_ERROR and "conflict" in message:
        return EscalationTrigger.IRRECONCILABLE_STATE
    if error.failure_class == FailureClass.UNCLASSIFIED:
        return EscalationTrigger.TECHNICAL_BLOCKER
    return EscalationTrigger.EXHAUSTED_RETRIES


def build_context(
    work_order: WorkOrderView,
    *,
    error: StructuredError,
    total_cost_usd: float,
) -> dict[str, Any]:
    """Everything a human needs to decide without re-reading logs."""

    attempts = work_order.metadata.get("attempts")
    history = attempts if isinstance(attempts, list) else []
    error_messages = [
        str(item.get("message"))
        for item in history
        if isinstance(item, dict) and item.get("message")
    ]
    if not error_messages or error_messages[-1] != error.message:
        error_messages.append(error.message)
    return {
        "error_messages": error_messages,
        "cost_spent_so_far": round(total_cost_usd, 6),
        "attempts_history": history,
        "failure_count": max(len(history), 1),
        "current_state": work_order.status.value,
        "blocking_issue": f"{error.stage.value}: {error.message}",
        "last_error": error.to_dict(),
    }


def generate_resolution_options(
    trigger: EscalationTrigger,
    *,
    estimated_cost_usd: float,
    cost_spent_usd: float,
    failure_count: int,
    success_rates: Mapping[str, float] | None = None,
) -> list[ResolutionOption]:
    """Applicable options ranked by success probability per dollar."""

    option_ids = ["A"]
    if trigger in {EscalationTrigger.EXHAUSTED_RETRIES, EscalationTrigger.CONFLICTING_REQUIREMENTS}:
        option_ids.append("B")
    if trigger == EscalationTrigger.CONFLICTING_REQUIREMENTS:
        option_ids.append("C")
    if cost_spent_usd > ABORT_COST_THRESHOLD_USD or failure_count > ABORT_FAILURE_THRESHOLD:
        option_ids.append("D")

    rates = success_rates or {}
    options: list[ResolutionOption] = []
    for option_id in option_ids:
        template = _OPTION_TEMPLATES[option_id]
        estimated = estimated_cost_usd * template.cost_multiplier
        probability = rates.get(template.key, template.success_probability)
        options.append(
            ResolutionOption(
                option_id=template.option_id,
                key=template.key,
                title=template.title,
                description=template.description,
                estimated_cost_usd=estimated,
                success_probability=probability,
                risk=template.risk,
                score=probability / max(estimated, 1.0),
            ),
        )
    options.sort(key=lambda option: (-option.score, option.option_id))
    return options


def recommend(
    options: Sequence[ResolutionOption],
    *,
    failure_count: int,
    cost_spent_usd: float,
    error_messages: Sequence[str],
) -> Recommendation:
    if not options:
        raise ValueError("At least one resolution option is required.")
    best = options[0]

    reasons = [
        f"Option {best.option_id} ({best.key}) has the best success probability per dollar.",
        f"Success probability {best.success_probability:.0%}, "
        f"estimated cost ${best.estimated_cost_usd:.2f}.",
    ]
    if failure_count > 2:
        reasons.append(f"{failure_count} attempts already failed.")
    if cost_spent_usd > 10:
        reasons.append(f"${cost_spent_usd:.2f} already spent on this work order.")

    confidence = best.success_probability
    if failure_count > ABORT_FAILURE_THRESHOLD:
        confidence *= 0.8
    if best.risk == RiskLevel.HIGH:
        confidence *= 0.9
    elif best.risk == RiskLevel.LOW:
        confidence *= 1.1

    return Recommendation(
        option_id=best.option_id,
        reasoning=" ".join(reasons),
        confidence=min(confidence, MAX_CONFIDENCE),
        failure_pattern=classify_failure_pattern(error_messages),
    )


def classify_failure_pattern(error_messages: Sequence[str]) -> str:
    haystack = " ".join(error_messages).lower()
    for keywords, label in _FAILURE_PATTERNS:
        if any(keyword in haystack for keyword in keywords):
            return label
    return "Unknown failure pattern"


def prepare_escalation(
    work_order: WorkOrderView,
    *,
    error: StructuredError,
    total_cost_usd: float,
    estimated_cost_usd: float,
) -> EscalationCreate:
    """Assemble trigger, context and ranked options for one escalation."""

    context = build_context(work_order, error=error, total_cost_usd=total_cost_usd)
    trigger = classify_trigger(error=error, total_cost_usd=total_cost_usd)
    options = generate_resolution_options(
        trigger,
        estimated_cost_usd=estimated_cost_usd,
        cost_spent_usd=total_cost_usd,
        failure_count=context["failure_count"],
    )
    recommendation = recommend(
        options,
        failure_count=context["failure_count"],
        cost_spent_usd=total_cost_usd,
        error_messages=context["error_messages"],
    )
    context["recommendation"] = recommendation.to_dict()
    return EscalationCreate(
        job_id=work_order.job_id,
        trigger=trigger,
        context=context,
        options=options,
        recommended_option=recommendation.option_id,
    )
