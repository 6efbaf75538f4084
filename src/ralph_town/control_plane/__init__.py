"""Control plane: criterion state machine, schedulers and orchestration driver."""

from ralph_town.control_plane.budgets import BudgetSnapshot, TokenBudget
from ralph_town.control_plane.controller import OrchestratorController, new_run_id, orchestrate
from ralph_town.control_plane.iteration import (
    CriterionPhase,
    CriterionRun,
    CriterionStateMachine,
    LoopSettings,
)
from ralph_town.control_plane.progress import ProgressStore, extract_progress_block
from ralph_town.control_plane.scheduler import (
    ParallelScheduler,
    SchedulerContext,
    SequentialScheduler,
)

__all__ = [
    "BudgetSnapshot",
    "CriterionPhase",
    "CriterionRun",
    "CriterionStateMachine",
    "LoopSettings",
    "OrchestratorController",
    "ParallelScheduler",
    "ProgressStore",
    "SchedulerContext",
    "SequentialScheduler",
    "TokenBudget",
    "extract_progress_block",
    "new_run_id",
    "orchestrate",
]
