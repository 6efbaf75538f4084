"""
ralph-town — orchestration driver

File: src/ralph_town/control_plane/controller.py
Last updated: 2026-10-19

Purpose
- Top-level entry point for one run: pick the scheduling policy, fire telemetry
  hooks and return exactly one ``OrchestrationResult``.

Functional requirements
- The result always carries one of: success, max_iterations, budget_exhausted, error.
- Telemetry failures never change the outcome.
- Cancellation of the caller's task propagates; everything else becomes ``error``.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from ralph_town.control_plane.scheduler import (
    ParallelScheduler,
    SchedulerContext,
    SequentialScheduler,
)
from ralph_town.domain.models import (
    ExecutionMode,
    OrchestrationMetrics,
    OrchestrationResult,
    RunStatus,
    criteria_pass_vector,
)
from ralph_town.observability.logging import correlation_scope
from ralph_town.observability.telemetry import Telemetry, TelemetryDispatcher

if TYPE_CHECKING:
    from ralph_town.domain.models import RunConfig
    from ralph_town.integration_plane.git_workflow import GitWorkflow
    from ralph_town.sandbox.factory import BackendFactory
    from ralph_town.synthesis_plane.agent_runner import AgentRunner


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


class OrchestratorController:
    """Select sequential or parallel scheduling and assemble the final result."""

    def __init__(
        self,
        *,
        backend_factory: BackendFactory,
        agent: AgentRunner,
        git_workflow: GitWorkflow | None = None,
        telemetry: Telemetry | TelemetryDispatcher | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._backend_factory = backend_factory
        self._agent = agent
        self._git_workflow = git_workflow
        if isinstance(telemetry, TelemetryDispatcher):
            self._telemetry = telemetry
        else:
            self._telemetry = TelemetryDispatcher([telemetry] if telemetry is not None else None)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, config: RunConfig, *, run_id: str | None = None) -> OrchestrationResult:
        resolved_run_id = run_id or new_run_id()
        start = self._clock()
        mode = config.execution.mode
        with correlation_scope(run_id=resolved_run_id):
            self._logger.info(
                "orchestration_started",
                run_id=resolved_run_id,
                mode=mode.value,
                runtime=config.execution.runtime.value,
                criteria=len(config.criteria),
                pending=sum(1 for criterion in config.criteria if not criterion.passes),
                max_tokens=config.budget.max_tokens,
            )
            await self._telemetry.run_started(resolved_run_id, config.raw)

            try:
                result = await self._dispatch(config, resolved_run_id)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("orchestration_failed", run_id=resolved_run_id)
                result = OrchestrationResult(
                    status=RunStatus.ERROR,
                    iterations=0,
                    criteria_met=criteria_pass_vector(config.criteria),
                    metrics=OrchestrationMetrics(
                        tokens_used=0,
                        duration_ms=max(0, int((self._clock() - start) * 1000)),
                    ),
                    error=str(exc),
                )

            self._logger.info(
                "orchestration_finished",
                run_id=resolved_run_id,
                status=result.status.value,
                iterations=result.iterations,
                tokens_used=result.metrics.tokens_used,
                duration_ms=result.metrics.duration_ms,
            )
            await self._telemetry.run_finished(resolved_run_id, result)
        return result

    async def _dispatch(self, config: RunConfig, run_id: str) -> OrchestrationResult:
        if not config.criteria:
            raise ValueError("run configuration has no acceptance criteria")
        context = SchedulerContext(
            run_id=run_id,
            config=config,
            backend_factory=self._backend_factory,
            agent=self._agent,
            telemetry=self._telemetry,
            git_workflow=self._git_workflow,
            clock=self._clock,
        )
        if config.execution.mode is ExecutionMode.PARALLEL:
            return await ParallelScheduler(context).run()
        return await SequentialScheduler(context).run()


async def orchestrate(
    config: RunConfig,
    *,
    backend_factory: BackendFactory,
    agent: AgentRunner,
    git_workflow: GitWorkflow | None = None,
    telemetry: Telemetry | TelemetryDispatcher | None = None,
    run_id: str | None = None,
) -> OrchestrationResult:
    """Run one orchestration with default wiring."""

    controller = OrchestratorController(
        backend_factory=backend_factory,
        agent=agent,
        git_workflow=git_workflow,
        telemetry=telemetry,
    )
    return await controller.run(config, run_id=run_id)


__all__ = ["OrchestratorController", "new_run_id", "orchestrate"]
