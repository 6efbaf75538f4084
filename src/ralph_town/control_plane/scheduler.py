"""
ralph-town — criterion schedulers

File: src/ralph_town/control_plane/scheduler.py
Last updated: 2026-10-19

Purpose
- Run the per-criterion state machine over all criteria of a run, either strictly in
  sequence on one shared backend or in parallel on isolated backends.

What should be included in this file
- SequentialScheduler: one backend, list order, global budget and iteration cap.
- ParallelScheduler: one fresh backend per criterion, bounded worker set, results
  in completion order, per-flow git finalize and pull request.
- Overall status resolution for both policies.

Functional requirements
- Every backend is initialized and cleaned up inside ``backend_session``.
- Errors are caught at the flow boundary and become ``error`` results.
- Parallel flows never share a criterion object, a backend or a workspace.

Non-functional requirements
- No cross-criterion cancellation; a stuck flow only occupies its own slot.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from ralph_town.control_plane.budgets import TokenBudget
from ralph_town.control_plane.iteration import CriterionStateMachine, LoopSettings
from ralph_town.control_plane.progress import ProgressStore
from ralph_town.domain.models import (
    CriterionResult,
    CriterionStatus,
    OrchestrationMetrics,
    OrchestrationResult,
    RunStatus,
    criteria_pass_vector,
)
from ralph_town.integration_plane.git_workflow import (
    GitWorkflowError,
    parallel_branch_name,
    parallel_pr_body,
    parallel_pr_title,
)
from ralph_town.observability.logging import correlation_scope
from ralph_town.sandbox.base import backend_session
from ralph_town.synthesis_plane.prompt_templates import TaskPromptRenderer
from ralph_town.utils.concurrency import WorkerPool

if TYPE_CHECKING:
    from ralph_town.domain.models import (
        Criterion,
        ExecutionSettings,
        GitConfig,
        IterationOutcome,
        RunConfig,
    )
    from ralph_town.integration_plane.git_workflow import GitWorkflow
    from ralph_town.observability.telemetry import TelemetryDispatcher
    from ralph_town.sandbox.base import ExecutionBackend
    from ralph_town.sandbox.factory import BackendFactory
    from ralph_town.synthesis_plane.agent_runner import AgentRunner


@dataclass(frozen=True, slots=True)
class SchedulerContext:
    """Collaborators shared by both scheduling policies for one run."""

    run_id: str
    config: RunConfig
    backend_factory: BackendFactory
    agent: AgentRunner
    telemetry: TelemetryDispatcher
    git_workflow: GitWorkflow | None = None
    clock: Callable[[], float] = field(default=time.monotonic)

    def require_git(self) -> GitWorkflow:
        if self.git_workflow is None:
            raise GitWorkflowError("repository configured but no git workflow available")
        return self.git_workflow


def loop_settings(execution: ExecutionSettings, max_iterations: int) -> LoopSettings:
    return LoopSettings(
        max_iterations=max_iterations,
        verify_timeout_ms=execution.verify_timeout_ms,
        model_id=execution.model,
        failure_excerpt_chars=execution.failure_excerpt_chars,
        feedback_commands=execution.feedback_commands,
    )


def resolve_sequential_status(*, all_passed: bool, budget_exhausted: bool) -> RunStatus:
    if all_passed:
        return RunStatus.SUCCESS
    if budget_exhausted:
        return RunStatus.BUDGET_EXHAUSTED
    return RunStatus.MAX_ITERATIONS


def resolve_parallel_status(
    results: Sequence[CriterionResult], *, budget_exhausted: bool
) -> RunStatus:
    """Combine per-criterion results; success only when every criterion succeeded."""

    if all(result.succeeded for result in results):
        return RunStatus.SUCCESS
    if budget_exhausted:
        return RunStatus.BUDGET_EXHAUSTED
    unmet = [result for result in results if not result.succeeded]
    if all(result.status is CriterionStatus.ERROR for result in unmet):
        return RunStatus.ERROR
    return RunStatus.MAX_ITERATIONS


def _elapsed_ms(clock: Callable[[], float], start: float) -> int:
    return max(0, int((clock() - start) * 1000))


class _IterationRecorder:
    """Per-iteration hook: charge the budget, count the iteration, fire telemetry."""

    __slots__ = ("_budget", "_criterion_id", "_run_id", "_telemetry", "iterations", "tokens")

    def __init__(
        self,
        *,
        run_id: str,
        criterion_id: str,
        budget: TokenBudget,
        telemetry: TelemetryDispatcher,
    ) -> None:
        self._run_id = run_id
        self._criterion_id = criterion_id
        self._budget = budget
        self._telemetry = telemetry
        self.iterations = 0
        self.tokens = 0

    async def __call__(self, outcome: IterationOutcome) -> None:
        self.iterations += 1
        self.tokens += outcome.usage.total_tokens
        self._budget.record(outcome.usage, criterion_id=self._criterion_id)
        await self._telemetry.iteration_completed(self._run_id, self._criterion_id, outcome)


class SequentialScheduler:
    """Drive criteria in list order against one shared backend."""

    def __init__(self, context: SchedulerContext, *, logger: Any | None = None) -> None:
        self._context = context
        self._renderer = TaskPromptRenderer(
            progress_tail_chars=context.config.execution.progress_tail_chars
        )
        self._logger = (logger if logger is not None else structlog.get_logger(__name__)).bind(
            run_id=context.run_id, mode="sequential"
        )

    async def run(self) -> OrchestrationResult:
        ctx = self._context
        config = ctx.config
        criteria = [criterion.copy() for criterion in config.criteria]
        budget = TokenBudget(config.budget.max_tokens)
        start = ctx.clock()
        pr_url: str | None = None

        try:
            async with backend_session(ctx.backend_factory()) as backend:
                workdir = backend.workspace
                if config.uses_git:
                    workdir = await ctx.require_git().setup(
                        backend, config.repository, config.git
                    )
                progress = ProgressStore(
                    backend, tail_chars=config.execution.progress_tail_chars
                )
                await progress.initialize(workdir, criteria, repository=config.repository.url)

                await self._run_criteria(
                    criteria, backend=backend, workdir=workdir, progress=progress, budget=budget
                )

                if config.uses_git and all(criterion.passes for criterion in criteria):
                    git = ctx.require_git()
                    await git.finalize(backend, workdir, config.git, config.summary_text)
                    pr_url = await git.create_pull_request(
                        backend, workdir, config.repository, config.git, config.summary_text
                    )
        except Exception as exc:  # noqa: BLE001
            self._logger.error(
                "sequential_run_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                iterations=budget.iterations,
            )
            return OrchestrationResult(
                status=RunStatus.ERROR,
                iterations=budget.iterations,
                criteria_met=criteria_pass_vector(criteria),
                metrics=self._metrics(budget, start),
                error=str(exc),
            )

        status = resolve_sequential_status(
            all_passed=all(criterion.passes for criterion in criteria),
            budget_exhausted=budget.is_exhausted,
        )
        self._logger.info(
            "sequential_run_finished",
            status=status.value,
            iterations=budget.iterations,
            tokens_used=budget.tokens_used,
        )
        return OrchestrationResult(
            status=status,
            iterations=budget.iterations,
            criteria_met=criteria_pass_vector(criteria),
            metrics=self._metrics(budget, start),
            pr_url=pr_url,
        )

    async def _run_criteria(
        self,
        criteria: Sequence[Criterion],
        *,
        backend: ExecutionBackend,
        workdir: str,
        progress: ProgressStore,
        budget: TokenBudget,
    ) -> None:
        ctx = self._context
        execution = ctx.config.execution
        cap = ctx.config.total_iteration_cap()

        for criterion in criteria:
            if criterion.passes:
                continue
            remaining = cap - budget.iterations
            if remaining <= 0:
                self._logger.info("iteration_cap_reached", cap=cap)
                return
            if budget.is_exhausted:
                return
            with correlation_scope(criterion_id=criterion.id):
                machine = CriterionStateMachine(
                    criterion,
                    backend=backend,
                    agent=ctx.agent,
                    workdir=workdir,
                    settings=loop_settings(
                        execution, min(execution.max_iterations_per_criterion, remaining)
                    ),
                    progress=progress,
                    renderer=self._renderer,
                    on_iteration=_IterationRecorder(
                        run_id=ctx.run_id,
                        criterion_id=criterion.id,
                        budget=budget,
                        telemetry=ctx.telemetry,
                    ),
                    should_stop=lambda: budget.is_exhausted,
                )
                await machine.run()

    def _metrics(self, budget: TokenBudget, start: float) -> OrchestrationMetrics:
        return OrchestrationMetrics(
            tokens_used=budget.tokens_used,
            duration_ms=_elapsed_ms(self._context.clock, start),
            cost_usd=budget.cost_usd,
        )


class ParallelScheduler:
    """Run each criterion on its own fresh backend with a concurrency cap."""

    def __init__(self, context: SchedulerContext, *, logger: Any | None = None) -> None:
        self._context = context
        self._renderer = TaskPromptRenderer(
            progress_tail_chars=context.config.execution.progress_tail_chars
        )
        self._logger = (logger if logger is not None else structlog.get_logger(__name__)).bind(
            run_id=context.run_id, mode="parallel"
        )

    async def run(self) -> OrchestrationResult:
        ctx = self._context
        config = ctx.config
        budget = TokenBudget(config.budget.max_tokens)
        start = ctx.clock()
        pool: WorkerPool[CriterionResult] = WorkerPool(
            max_concurrency=config.execution.max_concurrent
        )

        # Each flow owns a private copy; the config's criteria are never mutated.
        jobs = [self._job(criterion.copy(), budget) for criterion in config.criteria]
        results: list[CriterionResult] = []
        async for result in pool.run(jobs):
            results.append(result)
            self._logger.info(
                "criterion_flow_finished",
                criterion_id=result.id,
                status=result.status.value,
                iterations=result.iterations,
                completed=len(results),
                total=len(jobs),
            )

        by_id = {result.id: result for result in results}
        criteria_met = tuple(
            by_id[criterion.id].succeeded if criterion.id in by_id else criterion.passes
            for criterion in config.criteria
        )
        status = resolve_parallel_status(results, budget_exhausted=budget.is_exhausted)
        errors = [f"{result.id}: {result.error}" for result in results if result.error]
        self._logger.info(
            "parallel_run_finished",
            status=status.value,
            succeeded=sum(1 for result in results if result.succeeded),
            total=len(results),
            peak_concurrency=pool.semaphore.peak,
        )
        return OrchestrationResult(
            status=status,
            iterations=sum(result.iterations for result in results),
            criteria_met=criteria_met,
            metrics=OrchestrationMetrics(
                tokens_used=sum(result.tokens_used for result in results),
                duration_ms=_elapsed_ms(ctx.clock, start),
                cost_usd=budget.cost_usd,
            ),
            criterion_results=tuple(results),
            error="; ".join(errors) if status is RunStatus.ERROR and errors else None,
        )

    def _job(self, criterion: Criterion, budget: TokenBudget) -> Callable[[], Any]:
        async def _run() -> CriterionResult:
            return await self._run_flow(criterion, budget)

        return _run

    async def _run_flow(self, criterion: Criterion, budget: TokenBudget) -> CriterionResult:
        ctx = self._context
        config = ctx.config
        start = ctx.clock()
        if criterion.passes:
            return CriterionResult(
                id=criterion.id,
                status=CriterionStatus.SUCCESS,
                iterations=0,
                tokens_used=0,
                duration_ms=0,
            )

        recorder = _IterationRecorder(
            run_id=ctx.run_id,
            criterion_id=criterion.id,
            budget=budget,
            telemetry=ctx.telemetry,
        )
        pr_url: str | None = None
        with correlation_scope(criterion_id=criterion.id):
            try:
                flow_git = self._flow_git(criterion) if config.uses_git else config.git
                async with backend_session(ctx.backend_factory()) as backend:
                    self._logger.info(
                        "criterion_flow_started", criterion_id=criterion.id, backend_id=backend.id
                    )
                    workdir = backend.workspace
                    if config.uses_git:
                        workdir = await ctx.require_git().setup(
                            backend, config.repository, flow_git
                        )
                    progress = ProgressStore(
                        backend, tail_chars=config.execution.progress_tail_chars
                    )
                    await progress.initialize(
                        workdir, [criterion], repository=config.repository.url
                    )
                    machine = CriterionStateMachine(
                        criterion,
                        backend=backend,
                        agent=ctx.agent,
                        workdir=workdir,
                        settings=loop_settings(
                            config.execution, config.execution.max_iterations_per_criterion
                        ),
                        progress=progress,
                        renderer=self._renderer,
                        on_iteration=recorder,
                    )
                    run = await machine.run()
                    if run.passed and config.uses_git:
                        git = ctx.require_git()
                        await git.finalize(backend, workdir, flow_git, criterion.description)
                        pr_url = await git.create_pull_request(
                            backend, workdir, config.repository, flow_git, criterion.description
                        )
            except Exception as exc:  # noqa: BLE001
                self._logger.error(
                    "criterion_flow_failed",
                    criterion_id=criterion.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return CriterionResult(
                    id=criterion.id,
                    status=CriterionStatus.ERROR,
                    iterations=recorder.iterations,
                    tokens_used=recorder.tokens,
                    duration_ms=_elapsed_ms(ctx.clock, start),
                    error=str(exc),
                )

        return CriterionResult(
            id=criterion.id,
            status=run.status,
            iterations=run.iterations,
            tokens_used=run.tokens_used,
            duration_ms=_elapsed_ms(ctx.clock, start),
            pr_url=pr_url,
        )

    def _flow_git(self, criterion: Criterion) -> GitConfig:
        base = self._context.config.git
        return replace(
            base,
            feature_branch=parallel_branch_name(base.feature_branch, criterion.id),
            pr_title=parallel_pr_title(criterion),
            pr_body=parallel_pr_body(criterion),
        )


__all__ = [
    "ParallelScheduler",
    "SchedulerContext",
    "SequentialScheduler",
    "loop_settings",
    "resolve_parallel_status",
    "resolve_sequential_status",
]
