"""Deterministic stage failure classification for retry and escalation policy."""

from __future__ import annotations

from dataclasses import dataclass

from wo_orchestrator.orchestrator.errors import StageError
from wo_orchestrator.orchestrator.models import FailureClass, Stage, StructuredError

FAILURE_CLASSIFIER_VERSION = 1

_STAGE_FAILURE_CLASSES: dict[Stage, FailureClass] = {
    Stage.GENERATION: FailureClass.AGENT_INVOCATION_ERROR,
    Stage.APPLY: FailureClass.APPLY_ERROR,
    Stage.PUBLISH: FailureClass.PUBLISH_ERROR,
}
_RETRYABLE_CLASSES: frozenset[FailureClass] = frozenset(_STAGE_FAILURE_CLASSES.values())

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "quota",
    "try again later",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "bad credentials",
    "authentication",
    "401",
    "403",
)
_CONFLICT_PATTERNS: tuple[str, ...] = (
    "conflict",
    "already exists",
    "non-fast-forward",
    "merge",
    "dirty working tree",
    "uncommitted changes",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "connection refused",
    "network error",
    "temporarily unavailable",
    "could not resolve host",
    "502",
    "503",
)
_OUTPUT_PATTERNS: tuple[str, ...] = (
    "empty output",
    "unusable output",
    "invalid json",
    "no changes",
)

_PATTERN_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("rate_limit", _RATE_LIMIT_PATTERNS),
    ("auth", _AUTH_PATTERNS),
    ("conflict", _CONFLICT_PATTERNS),
    ("timeout", _TIMEOUT_PATTERNS),
    ("network", _NETWORK_PATTERNS),
    ("unusable_output", _OUTPUT_PATTERNS),
)

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError, OSError)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    stage: Stage
    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    message: str

    @property
    def retryable(self) -> bool:
        return self.failure_class in _RETRYABLE_CLASSES

    def to_error(self) -> StructuredError:
        return StructuredError(
            stage=self.stage,
            failure_class=self.failure_class,
            message=self.message,
        )

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for work-order events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "stage": self.stage.value,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_stage_failure(*, stage: Stage, error: BaseException) -> FailureClassification:
    """Classify an exception raised while driving `stage`."""

    message = _describe(error)
    haystack = message.lower()

    if isinstance(error, StageError):
        failure_class = error.failure_class
        base_rule = "stage_error"
        if error.exit_code is not None and error.exit_code != 0:
            base_rule = "abnormal_exit"
    elif isinstance(error, _TRANSPORT_ERRORS) and stage in _STAGE_FAILURE_CLASSES:
        failure_class = _STAGE_FAILURE_CLASSES[stage]
        base_rule = "transport_error"
    else:
        return FailureClassification(
            stage=stage,
            failure_class=FailureClass.UNCLASSIFIED,
            reason_code=f"{stage.value}_unclassified",
            matched_rule="fallback_unclassified",
            matched_pattern=None,
            message=message,
        )

    for rule, patterns in _PATTERN_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                stage=stage,
                failure_class=failure_class,
                reason_code=f"{stage.value}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
                message=message,
            )

    return FailureClassification(
        stage=stage,
        failure_class=failure_class,
        reason_code=f"{stage.value}_{base_rule}",
        matched_rule=base_rule,
        matched_pattern=None,
        message=message,
    )


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    if not text:
        return type(error).__name__
    return text


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
