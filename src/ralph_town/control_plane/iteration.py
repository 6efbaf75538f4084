"""
ralph-town — criterion iteration state machine

File: src/ralph_town/control_plane/iteration.py
Last updated: 2026-10-19

Purpose
- Drive one acceptance criterion through Generating/Verifying cycles until its
  backpressure command exits 0 or its iteration budget is exhausted.

States
- Pending -> Generating -> Verifying -> {Passed | Retrying -> Generating | Exhausted}

Functional requirements
- ``passes`` flips false -> true at most once, and only on a zero-exit verification.
- A failed verification feeds a truncated failure context into the next prompt.
- An agent invocation error becomes failure context; verification still runs.
- Any other backend error propagates to the owning flow.
- Iterations within one criterion are strictly sequential.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeAlias

import structlog

from ralph_town.constants import (
    DEFAULT_FAILURE_EXCERPT_CHARS,
    DEFAULT_MAX_ITERATIONS_PER_CRITERION,
    DEFAULT_MODEL,
    DEFAULT_VERIFY_TIMEOUT_MS,
)
from ralph_town.domain.models import CriterionStatus, IterationOutcome, TokenUsage
from ralph_town.observability.logging import correlation_scope
from ralph_town.sandbox.base import ExecuteOptions
from ralph_town.synthesis_plane.agent_runner import AgentInvocationError, AgentRequest
from ralph_town.synthesis_plane.prompt_templates import (
    TaskPromptInputs,
    TaskPromptRenderer,
    build_failure_context,
)

if TYPE_CHECKING:
    from ralph_town.control_plane.progress import ProgressStore
    from ralph_town.domain.models import Criterion
    from ralph_town.sandbox.base import ExecutionBackend
    from ralph_town.synthesis_plane.agent_runner import AgentRunner

IterationHook: TypeAlias = Callable[[IterationOutcome], Awaitable[None] | None]
StopCheck: TypeAlias = Callable[[], bool]


class CriterionPhase(StrEnum):
    PENDING = "pending"
    GENERATING = "generating"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    PASSED = "passed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True, slots=True)
class LoopSettings:
    """Per-criterion iteration limits and agent/verification parameters."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS_PER_CRITERION
    verify_timeout_ms: int = DEFAULT_VERIFY_TIMEOUT_MS
    model_id: str = DEFAULT_MODEL
    failure_excerpt_chars: int = DEFAULT_FAILURE_EXCERPT_CHARS
    feedback_commands: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_iterations <= 0:
            raise ValueError("max_iterations must be > 0")
        if self.verify_timeout_ms <= 0:
            raise ValueError("verify_timeout_ms must be > 0")
        if self.failure_excerpt_chars <= 0:
            raise ValueError("failure_excerpt_chars must be > 0")


@dataclass(frozen=True, slots=True)
class CriterionRun:
    """What one state-machine run produced."""

    criterion_id: str
    status: CriterionStatus
    iterations: int
    usage: TokenUsage
    outcomes: tuple[IterationOutcome, ...]
    stopped_early: bool = False

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens

    @property
    def passed(self) -> bool:
        return self.status is CriterionStatus.SUCCESS


class CriterionStateMachine:
    """Generate -> verify -> retry loop for a single criterion on one backend."""

    def __init__(
        self,
        criterion: Criterion,
        *,
        backend: ExecutionBackend,
        agent: AgentRunner,
        workdir: str,
        settings: LoopSettings | None = None,
        progress: ProgressStore | None = None,
        renderer: TaskPromptRenderer | None = None,
        on_iteration: IterationHook | None = None,
        should_stop: StopCheck | None = None,
        logger: Any | None = None,
    ) -> None:
        self._criterion = criterion
        self._backend = backend
        self._agent = agent
        self._workdir = workdir
        self._settings = settings if settings is not None else LoopSettings()
        self._progress = progress
        self._renderer = renderer if renderer is not None else TaskPromptRenderer()
        self._on_iteration = on_iteration
        self._should_stop = should_stop
        self._phase = CriterionPhase.PENDING
        self._logger = (logger if logger is not None else structlog.get_logger(__name__)).bind(
            criterion_id=criterion.id, backend_id=backend.id
        )

    @property
    def phase(self) -> CriterionPhase:
        return self._phase

    @property
    def criterion(self) -> Criterion:
        return self._criterion

    async def run(self) -> CriterionRun:
        if self._criterion.passes:
            self._phase = CriterionPhase.PASSED
            return CriterionRun(
                criterion_id=self._criterion.id,
                status=CriterionStatus.SUCCESS,
                iterations=0,
                usage=TokenUsage(),
                outcomes=(),
            )

        outcomes: list[IterationOutcome] = []
        total = TokenUsage()
        failure_context: str | None = None
        iteration = 0

        while True:
            iteration += 1
            with correlation_scope(iteration=str(iteration)):
                outcome, failure_context = await self._iterate(iteration, failure_context)
            outcomes.append(outcome)
            total = total + outcome.usage
            await self._notify(outcome)

            if outcome.passed:
                self._logger.info("criterion_passed", iteration=iteration)
                return self._finish(CriterionStatus.SUCCESS, iteration, total, outcomes)

            if iteration >= self._settings.max_iterations:
                self._phase = CriterionPhase.EXHAUSTED
                self._logger.info("criterion_exhausted", iterations=iteration)
                return self._finish(CriterionStatus.MAX_ITERATIONS, iteration, total, outcomes)

            if self._should_stop is not None and self._should_stop():
                self._phase = CriterionPhase.EXHAUSTED
                self._logger.info("criterion_stopped", iterations=iteration)
                return self._finish(
                    CriterionStatus.MAX_ITERATIONS, iteration, total, outcomes, stopped=True
                )

            self._phase = CriterionPhase.RETRYING

    async def _iterate(
        self, iteration: int, failure_context: str | None
    ) -> tuple[IterationOutcome, str | None]:
        criterion = self._criterion
        self._phase = CriterionPhase.GENERATING
        progress_text = await self._progress.read(self._workdir) if self._progress else ""
        prompt = self._renderer.render(
            TaskPromptInputs(
                criterion=criterion,
                progress=progress_text,
                previous_failure=failure_context,
                feedback_commands=self._settings.feedback_commands,
            )
        )

        agent_error: str | None = None
        try:
            result = await self._agent.run(
                self._backend,
                AgentRequest(
                    task=prompt,
                    workdir=self._workdir,
                    failure_context=failure_context,
                    model_id=self._settings.model_id,
                ),
            )
            agent_output = result.output
            usage = result.usage
        except AgentInvocationError as exc:
            agent_error = str(exc)
            agent_output = exc.output
            usage = exc.usage
            self._logger.warning("agent_invocation_failed", iteration=iteration, error=agent_error)

        self._phase = CriterionPhase.VERIFYING
        verification = await self._backend.execute(
            criterion.backpressure,
            ExecuteOptions(cwd=self._workdir, timeout_ms=self._settings.verify_timeout_ms),
        )
        passed = verification.exit_code == 0

        next_failure: str | None
        if passed:
            criterion.mark_passed()
            self._phase = CriterionPhase.PASSED
            next_failure = None
        else:
            next_failure = build_failure_context(
                criterion.backpressure,
                verification.combined_output,
                excerpt_chars=self._settings.failure_excerpt_chars,
            )
            if agent_error is not None:
                next_failure = f"Agent invocation failed: {agent_error}\n{next_failure}"
            self._logger.info(
                "criterion_verification_failed",
                iteration=iteration,
                exit_code=verification.exit_code,
                timed_out=verification.timed_out,
            )

        outcome = IterationOutcome(
            iteration=iteration,
            criterion_id=criterion.id,
            agent_output=agent_output,
            usage=usage,
            verification_exit_code=verification.exit_code,
            passed=passed,
            agent_error=agent_error,
        )
        if self._progress is not None:
            await self._progress.append_iteration(
                self._workdir,
                iteration=iteration,
                criterion_id=criterion.id,
                passed=passed,
                agent_output=agent_output,
            )
        return outcome, next_failure

    async def _notify(self, outcome: IterationOutcome) -> None:
        if self._on_iteration is None:
            return
        maybe_awaitable = self._on_iteration(outcome)
        if inspect.isawaitable(maybe_awaitable):
            await maybe_awaitable

    def _finish(
        self,
        status: CriterionStatus,
        iterations: int,
        usage: TokenUsage,
        outcomes: list[IterationOutcome],
        *,
        stopped: bool = False,
    ) -> CriterionRun:
        return CriterionRun(
            criterion_id=self._criterion.id,
            status=status,
            iterations=iterations,
            usage=usage,
            outcomes=tuple(outcomes),
            stopped_early=stopped,
        )


__all__ = [
    "CriterionPhase",
    "CriterionRun",
    "CriterionStateMachine",
    "IterationHook",
    "LoopSettings",
    "StopCheck",
]
