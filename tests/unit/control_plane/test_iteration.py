"""
ralph-town — unit tests for the criterion state machine

File: tests/unit/control_plane/test_iteration.py
Last updated: 2026-10-19

Purpose
- Validate generate -> verify -> retry semantics for one criterion.

What this test file should cover
- passes flips once, only on a zero-exit verification.
- Iteration cap yields max_iterations.
- Failure context reaches the next prompt; agent errors still verify.
- Already-passed criteria run zero iterations.
- Failed agent runs keep their reported usage; each iteration is bound for log correlation.
"""

from __future__ import annotations

from typing import Any

import pytest

from ralph_town.control_plane.iteration import CriterionPhase, CriterionStateMachine, LoopSettings
from ralph_town.control_plane.progress import ProgressStore
from ralph_town.domain.models import Criterion, CriterionStatus, IterationOutcome, TokenUsage
from ralph_town.observability.logging import get_correlation_context
from ralph_town.sandbox.errors import BackendExecutionError
from ralph_town.synthesis_plane.agent_runner import (
    AgentInvocationError,
    AgentRequest,
    AgentResult,
)


async def _ready(fakes: Any, **kwargs: Any) -> Any:
    backend = fakes.Backend(**kwargs)
    await backend.initialize()
    return backend


async def test_first_iteration_success_flips_passes(fakes: Any) -> None:
    backend = await _ready(fakes)
    criterion = fakes.criteria(1)[0]
    agent = fakes.FileAgent()
    machine = CriterionStateMachine(criterion, backend=backend, agent=agent, workdir="/work")

    run = await machine.run()

    assert run.status is CriterionStatus.SUCCESS
    assert run.iterations == 1
    assert run.tokens_used == 15
    assert criterion.passes
    assert machine.phase is CriterionPhase.PASSED
    assert backend.commands[-1][0] == "test -f done.txt"
    assert backend.commands[-1][1].cwd == "/work"


async def test_iteration_cap_reports_max_iterations(fakes: Any) -> None:
    backend = await _ready(fakes)
    criterion = fakes.criteria(1)[0]
    agent = fakes.FileAgent(succeed_on=None)
    machine = CriterionStateMachine(
        criterion,
        backend=backend,
        agent=agent,
        workdir="/work",
        settings=LoopSettings(max_iterations=3),
    )

    run = await machine.run()

    assert run.status is CriterionStatus.MAX_ITERATIONS
    assert run.iterations == 3
    assert agent.calls == 3
    assert not criterion.passes
    assert machine.phase is CriterionPhase.EXHAUSTED


async def test_failure_context_feeds_the_next_prompt(fakes: Any) -> None:
    backend = await _ready(fakes)
    agent = fakes.FileAgent(succeed_on=2)
    machine = CriterionStateMachine(
        fakes.criteria(1)[0], backend=backend, agent=agent, workdir="/work"
    )

    run = await machine.run()

    first, second = agent.requests
    assert run.iterations == 2
    assert first.failure_context is None
    assert "Previous Attempt Failed" not in first.task
    assert second.failure_context is not None
    assert second.failure_context.startswith("Backpressure command failed: test -f done.txt\n")
    assert "missing" in second.failure_context
    assert "## Previous Attempt Failed" in second.task


async def test_failure_excerpt_is_truncated(fakes: Any) -> None:
    long_output = "x" * 5_000
    backend = await _ready(
        fakes, responder=lambda backend, command, options: fakes.failed(long_output)
    )
    agent = fakes.FileAgent(succeed_on=None)
    machine = CriterionStateMachine(
        fakes.criteria(1)[0],
        backend=backend,
        agent=agent,
        workdir="/work",
        settings=LoopSettings(max_iterations=2, failure_excerpt_chars=100),
    )

    await machine.run()

    context = agent.requests[1].failure_context
    assert context is not None
    assert context.split("Output: ", 1)[1] == "x" * 100


async def test_agent_error_becomes_context_and_still_verifies(fakes: Any) -> None:
    backend = await _ready(fakes)
    backend.files["/work/done.txt"] = b"already there"
    agent = fakes.FailAgent("agent exited with 2: rate limited")
    machine = CriterionStateMachine(
        fakes.criteria(1)[0], backend=backend, agent=agent, workdir="/work"
    )

    run = await machine.run()

    assert run.status is CriterionStatus.SUCCESS
    assert run.outcomes[0].agent_error == "agent exited with 2: rate limited"
    assert run.outcomes[0].agent_output == "partial"
    assert backend.command_texts() == ["test -f done.txt"]


async def test_agent_error_is_prefixed_in_failure_context(fakes: Any) -> None:
    backend = await _ready(fakes)
    agent = fakes.FailAgent("agent timed out: 600000ms")
    machine = CriterionStateMachine(
        fakes.criteria(1)[0],
        backend=backend,
        agent=agent,
        workdir="/work",
        settings=LoopSettings(max_iterations=2),
    )

    run = await machine.run()

    assert run.status is CriterionStatus.MAX_ITERATIONS
    context = agent.requests[1].failure_context
    assert context is not None
    assert context.startswith("Agent invocation failed: agent timed out: 600000ms\n")


async def test_already_passed_criterion_runs_zero_iterations(fakes: Any) -> None:
    backend = await _ready(fakes)
    criterion = Criterion(id="c1", description="done", backpressure="true", passes=True)
    agent = fakes.FileAgent()

    run = await CriterionStateMachine(
        criterion, backend=backend, agent=agent, workdir="/work"
    ).run()

    assert run.status is CriterionStatus.SUCCESS
    assert run.iterations == 0
    assert agent.calls == 0
    assert backend.commands == []


async def test_backend_errors_propagate(fakes: Any) -> None:
    def _explode(backend: Any, command: str, options: Any) -> Any:
        raise BackendExecutionError("connection dropped")

    backend = await _ready(fakes, responder=_explode)
    machine = CriterionStateMachine(
        fakes.criteria(1)[0], backend=backend, agent=fakes.FileAgent(), workdir="/work"
    )

    with pytest.raises(BackendExecutionError, match="connection dropped"):
        await machine.run()


async def test_hooks_progress_and_stop_check(fakes: Any) -> None:
    backend = await _ready(fakes)
    seen: list[IterationOutcome] = []

    async def _record(outcome: IterationOutcome) -> None:
        seen.append(outcome)

    progress = ProgressStore(backend, clock=lambda: "T")
    machine = CriterionStateMachine(
        fakes.criteria(1)[0],
        backend=backend,
        agent=fakes.FileAgent(succeed_on=None),
        workdir="/work",
        settings=LoopSettings(max_iterations=5),
        progress=progress,
        on_iteration=_record,
        should_stop=lambda: len(seen) >= 2,
    )

    run = await machine.run()

    assert run.iterations == 2
    assert run.stopped_early
    assert [outcome.iteration for outcome in seen] == [1, 2]
    log = await progress.read("/work")
    assert "## Iteration 2 - c1 (FAIL)" in log


@pytest.mark.parametrize(
    "kwargs", [{"max_iterations": 0}, {"verify_timeout_ms": 0}, {"failure_excerpt_chars": -1}]
)
def test_loop_settings_validation(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        LoopSettings(**kwargs)


class _MeteredFailAgent:
    def __init__(self) -> None:
        self.contexts: list[dict[str, str]] = []

    async def run(self, backend: Any, request: AgentRequest) -> AgentResult:
        self.contexts.append(get_correlation_context())
        raise AgentInvocationError(
            "agent exited with 1: crashed",
            exit_code=1,
            output="half done",
            usage=TokenUsage(input_tokens=5, output_tokens=2),
        )


async def test_agent_error_keeps_partial_usage(fakes: Any) -> None:
    backend = await _ready(fakes)
    backend.files["/work/done.txt"] = b"already there"
    machine = CriterionStateMachine(
        fakes.criteria(1)[0], backend=backend, agent=_MeteredFailAgent(), workdir="/work"
    )

    run = await machine.run()

    assert run.outcomes[0].usage == TokenUsage(input_tokens=5, output_tokens=2)
    assert run.usage == TokenUsage(input_tokens=5, output_tokens=2)


async def test_each_iteration_is_bound_for_correlation(fakes: Any) -> None:
    backend = await _ready(fakes)
    agent = _MeteredFailAgent()
    machine = CriterionStateMachine(
        fakes.criteria(1)[0],
        backend=backend,
        agent=agent,
        workdir="/work",
        settings=LoopSettings(max_iterations=2),
    )

    await machine.run()

    assert [context.get("iteration") for context in agent.contexts] == ["1", "2"]
    assert "iteration" not in get_correlation_context()
