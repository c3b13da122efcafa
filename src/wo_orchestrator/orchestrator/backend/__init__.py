"""Execution stage collaborators."""

from wo_orchestrator.orchestrator.backend.base import (
    ApplyRequest,
    ApplyResult,
    CodeApplier,
    CodeGenerator,
    GenerationRequest,
    GenerationResult,
    PublishRequest,
    PublishResult,
    Publisher,
)
from wo_orchestrator.orchestrator.backend.cli_applier import CliCodeApplier
from wo_orchestrator.orchestrator.backend.simulated import (
    SimulatedApplier,
    SimulatedGenerator,
    SimulatedPublisher,
)

__all__ = [
    "ApplyRequest",
    "ApplyResult",
    "CliCodeApplier",
    "CodeApplier",
    "CodeGenerator",
    "GenerationRequest",
    "GenerationResult",
    "PublishRequest",
    "PublishResult",
    "Publisher",
    "SimulatedApplier",
    "SimulatedGenerator",
    "SimulatedPublisher",
]
