"""
ralph-town — unit tests for criterion schedulers

File: tests/unit/control_plane/test_scheduler.py
Last updated: 2026-10-19

Purpose
- Validate sequential and parallel scheduling over in-memory backends.

What this test file should cover
- Sequential: list order, shared backend, iteration cap and token budget stops.
- Parallel: concurrency cap, completion order, isolation, error aggregation.
- Exactly one cleanup per backend, including failed flows.
- Git finalize and pull-request creation in both modes.
"""

from __future__ import annotations

import asyncio
from typing import Any

from ralph_town.control_plane.scheduler import (
    ParallelScheduler,
    SchedulerContext,
    SequentialScheduler,
    resolve_parallel_status,
    resolve_sequential_status,
)
from ralph_town.domain.models import (
    CriterionResult,
    CriterionStatus,
    Credentials,
    RunConfig,
    RunStatus,
    TokenUsage,
)
from ralph_town.integration_plane.git_workflow import BackendGitWorkflow
from ralph_town.observability.telemetry import TelemetryDispatcher
from ralph_town.sandbox.base import GitStatus
from ralph_town.sandbox.errors import BackendProvisioningError
from ralph_town.synthesis_plane.agent_runner import AgentRequest, AgentResult

PR_URL = "https://github.com/acme/widgets/pull/7"


def _criteria_payload(count: int) -> list[dict[str, Any]]:
    return [
        {"id": f"c{index}", "description": f"criterion {index}", "backpressure": "test -f done.txt"}
        for index in range(1, count + 1)
    ]


def _config(fakes: Any, *, count: int = 1, **sections: Any) -> RunConfig:
    return RunConfig.from_config(fakes.config(acceptance_criteria=_criteria_payload(count), **sections))


def _context(config: RunConfig, factory: Any, agent: Any, **kwargs: Any) -> SchedulerContext:
    return SchedulerContext(
        run_id="run-test",
        config=config,
        backend_factory=factory,
        agent=agent,
        telemetry=TelemetryDispatcher(),
        **kwargs,
    )


def _gh_responder(fakes: Any) -> Any:
    def _respond(backend: Any, command: str, options: Any) -> Any:
        if command.startswith("gh pr create"):
            return fakes.ok(f"Creating pull request\n{PR_URL}\n")
        return fakes.file_check(backend, command, options)

    return _respond


class _StaggeredAgent:
    """Writes the done file after a per-criterion delay taken from the prompt."""

    def __init__(self, delays: dict[str, float]) -> None:
        self.delays = delays
        self.active = 0
        self.peak_active = 0

    async def run(self, backend: Any, request: AgentRequest) -> AgentResult:
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            for description, delay in self.delays.items():
                if f"# Task: {description}\n" in request.task:
                    await asyncio.sleep(delay)
            await backend.write_file(f"{request.workdir}/done.txt", "ok")
            return AgentResult(output="done", usage=TokenUsage(input_tokens=3, output_tokens=2))
        finally:
            self.active -= 1


# ---------------------------------------------------------------------------
# Sequential
# ---------------------------------------------------------------------------


async def test_sequential_success_uses_one_backend(fakes: Any) -> None:
    pool = fakes.Pool()
    agent = fakes.FileAgent()
    config = _config(fakes, count=2)

    result = await SequentialScheduler(_context(config, pool, agent)).run()

    assert result.status is RunStatus.SUCCESS
    assert result.criteria_met == (True, True)
    assert result.iterations == 1
    assert result.criterion_results is None
    assert len(pool.created) == 1
    assert pool.created[0].cleanup_calls == 1
    assert not any(criterion.passes for criterion in config.criteria)


async def test_sequential_iteration_cap_stops_the_run(fakes: Any) -> None:
    pool = fakes.Pool()
    agent = fakes.FileAgent(succeed_on=None)
    config = _config(
        fakes,
        count=2,
        execution={"max_iterations_per_criterion": 3, "max_total_iterations": 2},
    )

    result = await SequentialScheduler(_context(config, pool, agent)).run()

    assert result.status is RunStatus.MAX_ITERATIONS
    assert result.iterations == 2
    assert result.criteria_met == (False, False)
    assert agent.calls == 2


async def test_sequential_budget_stops_after_exhausting_iteration(fakes: Any) -> None:
    pool = fakes.Pool()
    agent = fakes.FileAgent(succeed_on=None)
    config = _config(fakes, count=2, budget={"max_tokens": 10})

    result = await SequentialScheduler(_context(config, pool, agent)).run()

    assert result.status is RunStatus.BUDGET_EXHAUSTED
    assert result.iterations == 1
    assert result.metrics.tokens_used == 15
    assert agent.calls == 1


async def test_sequential_success_beats_budget_exhaustion(fakes: Any) -> None:
    agent = fakes.FileAgent()
    config = _config(fakes, budget={"max_tokens": 5})

    result = await SequentialScheduler(_context(config, fakes.Pool(), agent)).run()

    assert result.status is RunStatus.SUCCESS


async def test_sequential_progress_log_is_written_in_workspace(fakes: Any) -> None:
    pool = fakes.Pool()
    config = _config(fakes, count=1)

    await SequentialScheduler(_context(config, pool, fakes.FileAgent())).run()

    log = pool.created[0].files["/work/flow-1/progress.txt"].decode()
    assert log.startswith("# Ralph Progress Log")
    assert "## Iteration 1 - c1 (PASS)" in log
    assert "wrote the file" in log


async def test_sequential_initialize_failure_is_an_error_result(fakes: Any) -> None:
    pool = fakes.Pool(initialize_error=BackendProvisioningError("no capacity"))

    result = await SequentialScheduler(
        _context(_config(fakes), pool, fakes.FileAgent())
    ).run()

    assert result.status is RunStatus.ERROR
    assert result.error == "no capacity"
    assert pool.created[0].cleanup_calls == 1


async def test_sequential_git_finalizes_and_opens_pr(fakes: Any) -> None:
    pool = fakes.Pool(responder=_gh_responder(fakes))

    def factory() -> Any:
        backend = pool()
        backend.fake_git.git_status = GitStatus(
            branch="feature/x", changed_files=("src/a.py", "progress.txt")
        )
        return backend

    config = _config(
        fakes,
        repository={"url": "https://github.com/acme/widgets.git"},
        git={"feature_branch": "feature/x", "create_pr": True},
    )
    workflow = BackendGitWorkflow(Credentials(github_token="ghp_token"))

    result = await SequentialScheduler(
        _context(config, factory, fakes.FileAgent(), git_workflow=workflow)
    ).run()

    backend = pool.created[0]
    calls = {name: (args, kwargs) for name, args, kwargs in backend.fake_git.calls}
    assert result.status is RunStatus.SUCCESS
    assert result.pr_url == PR_URL
    assert calls["clone"][0] == ("https://github.com/acme/widgets.git", "/work/flow-1/repo")
    assert calls["checkout"] == (("/work/flow-1/repo", "feature/x"), {"create": True})
    assert calls["add"][0] == ("/work/flow-1/repo", ("src/a.py",))
    assert calls["commit"][0][1] == "feat: - criterion 1"
    assert calls["push"][1] == {"branch": "feature/x", "token": "ghp_token"}
    gh_command, gh_options = backend.commands[-1]
    assert gh_command.startswith("gh pr create --repo acme/widgets --head feature/x --base main")
    assert "ghp_token" not in gh_command
    assert gh_options.env == {"GH_TOKEN": "ghp_token"}


async def test_sequential_git_skips_finalize_when_unmet(fakes: Any) -> None:
    pool = fakes.Pool()
    config = _config(
        fakes,
        repository={"url": "https://github.com/acme/widgets.git"},
        execution={"max_iterations_per_criterion": 1},
    )
    workflow = BackendGitWorkflow(Credentials(github_token="ghp_token"))

    result = await SequentialScheduler(
        _context(config, pool, fakes.FileAgent(succeed_on=None), git_workflow=workflow)
    ).run()

    assert result.status is RunStatus.MAX_ITERATIONS
    assert "commit" not in pool.created[0].fake_git.names()
    assert result.pr_url is None


# ---------------------------------------------------------------------------
# Parallel
# ---------------------------------------------------------------------------


async def test_parallel_respects_concurrency_cap(fakes: Any) -> None:
    pool = fakes.Pool()
    agent = fakes.FileAgent(delay=0.01)
    config = _config(fakes, count=5, execution={"mode": "parallel", "max_concurrent": 2})

    result = await ParallelScheduler(_context(config, pool, agent)).run()

    assert result.status is RunStatus.SUCCESS
    assert result.criteria_met == (True,) * 5
    assert agent.peak_active <= 2
    assert len(pool.created) == 5
    assert {backend.workspace for backend in pool.created} == {
        f"/work/flow-{index}" for index in range(1, 6)
    }
    assert all(backend.cleanup_calls == 1 for backend in pool.created)


async def test_parallel_cap_of_one_never_overlaps(fakes: Any) -> None:
    agent = fakes.FileAgent(delay=0.005)
    config = _config(fakes, count=3, execution={"mode": "parallel", "max_concurrent": 1})

    await ParallelScheduler(_context(config, fakes.Pool(), agent)).run()

    assert agent.peak_active == 1


async def test_parallel_results_follow_completion_order(fakes: Any) -> None:
    agent = _StaggeredAgent({"criterion 1": 0.05, "criterion 2": 0.0, "criterion 3": 0.02})
    config = _config(fakes, count=3, execution={"mode": "parallel", "max_concurrent": 3})

    result = await ParallelScheduler(_context(config, fakes.Pool(), agent)).run()

    assert result.criterion_results is not None
    assert [item.id for item in result.criterion_results] == ["c2", "c3", "c1"]
    assert result.criteria_met == (True, True, True)
    assert result.iterations == 3
    assert result.metrics.tokens_used == 15


async def test_parallel_all_errors_aggregate_into_error_status(fakes: Any) -> None:
    pool = fakes.Pool(initialize_error=BackendProvisioningError("no capacity"))
    config = _config(fakes, count=2, execution={"mode": "parallel"})

    result = await ParallelScheduler(_context(config, pool, fakes.FileAgent())).run()

    assert result.status is RunStatus.ERROR
    assert result.error is not None
    assert "c1: no capacity" in result.error and "c2: no capacity" in result.error
    assert all(backend.cleanup_calls == 1 for backend in pool.created)


async def test_parallel_failure_in_one_flow_does_not_stop_others(fakes: Any) -> None:
    created: list[Any] = []

    def factory() -> Any:
        error = BackendProvisioningError("boom") if not created else None
        backend = fakes.Backend(
            backend_id=f"fake-{len(created) + 1}",
            workspace=f"/work/flow-{len(created) + 1}",
            initialize_error=error,
        )
        created.append(backend)
        return backend

    config = _config(fakes, count=3, execution={"mode": "parallel", "max_concurrent": 1})

    result = await ParallelScheduler(_context(config, factory, fakes.FileAgent())).run()

    statuses = {item.id: item.status for item in result.criterion_results or ()}
    assert statuses == {
        "c1": CriterionStatus.ERROR,
        "c2": CriterionStatus.SUCCESS,
        "c3": CriterionStatus.SUCCESS,
    }
    assert result.status is RunStatus.ERROR
    assert result.criteria_met == (False, True, True)


async def test_parallel_skips_already_passed_without_backend(fakes: Any) -> None:
    payload = _criteria_payload(2)
    payload[0]["passes"] = True
    pool = fakes.Pool()
    config = RunConfig.from_config(
        fakes.config(acceptance_criteria=payload, execution={"mode": "parallel"})
    )

    result = await ParallelScheduler(_context(config, pool, fakes.FileAgent())).run()

    by_id = {item.id: item for item in result.criterion_results or ()}
    assert by_id["c1"].iterations == 0
    assert by_id["c1"].status is CriterionStatus.SUCCESS
    assert len(pool.created) == 1
    assert result.status is RunStatus.SUCCESS


async def test_parallel_git_uses_per_criterion_branches_and_prs(fakes: Any) -> None:
    pool = fakes.Pool(responder=_gh_responder(fakes))

    def factory() -> Any:
        backend = pool()
        backend.fake_git.git_status = GitStatus(branch="", changed_files=("app.py",))
        return backend

    config = _config(
        fakes,
        count=2,
        execution={"mode": "parallel"},
        repository={"url": "git@github.com:acme/widgets.git"},
        git={"create_pr": True},
    )
    workflow = BackendGitWorkflow(Credentials(github_token="ghp_token"))

    result = await ParallelScheduler(
        _context(config, factory, fakes.FileAgent(), git_workflow=workflow)
    ).run()

    branches = sorted(
        args[1] for backend in pool.created for name, args, _ in backend.fake_git.calls
        if name == "checkout"
    )
    assert branches == ["feature/ralph/c1", "feature/ralph/c2"]
    assert all(item.pr_url == PR_URL for item in result.criterion_results or ())
    commands = [text for backend in pool.created for text in backend.command_texts()]
    pr_commands = [text for text in commands if text.startswith("gh pr create")]
    assert any("--title 'c1: criterion 1'" in text for text in pr_commands)
    assert all("Automated by Ralph Loop (parallel mode)" in text for text in pr_commands)


# ---------------------------------------------------------------------------
# Status resolution
# ---------------------------------------------------------------------------


def _result(status: CriterionStatus, criterion_id: str = "c") -> CriterionResult:
    return CriterionResult(
        id=criterion_id, status=status, iterations=1, tokens_used=1, duration_ms=1
    )


def test_sequential_status_precedence() -> None:
    assert resolve_sequential_status(all_passed=True, budget_exhausted=True) is RunStatus.SUCCESS
    assert (
        resolve_sequential_status(all_passed=False, budget_exhausted=True)
        is RunStatus.BUDGET_EXHAUSTED
    )
    assert (
        resolve_sequential_status(all_passed=False, budget_exhausted=False)
        is RunStatus.MAX_ITERATIONS
    )


def test_parallel_status_precedence() -> None:
    ok = _result(CriterionStatus.SUCCESS)
    capped = _result(CriterionStatus.MAX_ITERATIONS)
    errored = _result(CriterionStatus.ERROR)

    assert resolve_parallel_status([ok, ok], budget_exhausted=True) is RunStatus.SUCCESS
    assert resolve_parallel_status([ok, capped], budget_exhausted=True) is RunStatus.BUDGET_EXHAUSTED
    assert resolve_parallel_status([ok, errored], budget_exhausted=False) is RunStatus.ERROR
    assert (
        resolve_parallel_status([errored, capped], budget_exhausted=False)
        is RunStatus.MAX_ITERATIONS
    )
