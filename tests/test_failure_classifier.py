from __future__ import annotations

import allure
import pytest

from wo_orchestrator.orchestrator.errors import (
    AgentInvocationError,
    ApplyError,
    PublishError,
    RoutingError,
)
from wo_orchestrator.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_stage_failure,
)
from wo_orchestrator.orchestrator.models import FailureClass, Stage

pytestmark = [
    allure.epic("Orchestrator Core"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("error", "stage", "failure_class", "reason_code"),
    [
        (
            AgentInvocationError("429 Too Many Requests"),
            Stage.GENERATION,
            FailureClass.AGENT_INVOCATION_ERROR,
            "generation_rate_limit",
        ),
        (
            AgentInvocationError("agent returned unusable output"),
            Stage.GENERATION,
            FailureClass.AGENT_INVOCATION_ERROR,
            "generation_unusable_output",
        ),
        (
            ApplyError("dirty working tree: uncommitted changes", exit_code=1),
            Stage.APPLY,
            FailureClass.APPLY_ERROR,
            "apply_conflict",
        ),
        (
            ApplyError("segfault", exit_code=139),
            Stage.APPLY,
            FailureClass.APPLY_ERROR,
            "apply_abnormal_exit",
        ),
        (
            PublishError("Bad credentials"),
            Stage.PUBLISH,
            FailureClass.PUBLISH_ERROR,
            "publish_auth",
        ),
        (
            PublishError("remote rejected push"),
            Stage.PUBLISH,
            FailureClass.PUBLISH_ERROR,
            "publish_stage_error",
        ),
    ],
)
def test_stage_errors_keep_their_class_and_refine_reason(
    error: Exception,
    stage: Stage,
    failure_class: FailureClass,
    reason_code: str,
) -> None:
    classification = classify_stage_failure(stage=stage, error=error)

    assert classification.failure_class == failure_class
    assert classification.reason_code == reason_code
    assert classification.retryable


def test_transport_errors_take_the_stage_failure_class() -> None:
    classification = classify_stage_failure(
        stage=Stage.PUBLISH,
        error=ConnectionError("connection reset by peer"),
    )

    assert classification.failure_class == FailureClass.PUBLISH_ERROR
    assert classification.matched_rule == "network"
    assert classification.matched_pattern == "connection reset"


def test_timeout_without_message_falls_back_to_type_name() -> None:
    classification = classify_stage_failure(stage=Stage.GENERATION, error=TimeoutError())

    assert classification.failure_class == FailureClass.AGENT_INVOCATION_ERROR
    assert classification.message == "TimeoutError"
    assert classification.reason_code == "generation_timeout"


def test_unknown_exceptions_are_unclassified_and_not_retryable() -> None:
    classification = classify_stage_failure(stage=Stage.APPLY, error=KeyError("files"))

    assert classification.failure_class == FailureClass.UNCLASSIFIED
    assert classification.matched_rule == "fallback_unclassified"
    assert not classification.retryable


def test_routing_error_is_unclassified() -> None:
    classification = classify_stage_failure(
        stage=Stage.ROUTING,
        error=RoutingError("No active agents available for routing."),
    )

    assert classification.failure_class == FailureClass.UNCLASSIFIED
    assert classification.reason_code == "routing_unclassified"


def test_classification_serializes_structured_error_and_details() -> None:
    classification = classify_stage_failure(
        stage=Stage.GENERATION,
        error=AgentInvocationError("quota exhausted"),
    )

    assert classification.to_error().to_dict() == {
        "stage": "generation",
        "failure_class": "agent_invocation_error",
        "message": "quota exhausted",
    }
    details = classification.to_event_details()
    assert details["classifier_version"] == FAILURE_CLASSIFIER_VERSION
    assert details["matched_rule"] == "rate_limit"
    assert details["matched_pattern"] == "quota"
