"""Domain models shared by the sandbox, control and integration planes."""

from __future__ import annotations

from ralph_town.domain.models import (
    Credentials,
    Criterion,
    CriterionResult,
    CriterionStatus,
    IterationOutcome,
    OrchestrationResult,
    RunConfig,
    RunStatus,
    TokenUsage,
)

__all__ = [
    "Credentials",
    "Criterion",
    "CriterionResult",
    "CriterionStatus",
    "IterationOutcome",
    "OrchestrationResult",
    "RunConfig",
    "RunStatus",
    "TokenUsage",
]
