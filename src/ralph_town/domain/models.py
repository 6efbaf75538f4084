"""Dataclass domain models for criteria, iteration outcomes and orchestration results."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from ralph_town import constants

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class RunStatus(StrEnum):
    """Overall orchestration outcome; every run resolves to exactly one."""

    SUCCESS = "success"
    MAX_ITERATIONS = "max_iterations"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ERROR = "error"


class CriterionStatus(StrEnum):
    """Terminal status of a single criterion flow."""

    SUCCESS = "success"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


class ExecutionMode(StrEnum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class RuntimeKind(StrEnum):
    LOCAL = "local"
    CONTAINER = "container"
    CLOUD = "cloud"


def _require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


@dataclass(slots=True)
class Criterion:
    """
    One unit of required work proven by its backpressure command.

    ``passes`` is the only field mutated during a run and moves false -> true once.
    """

    id: str
    description: str
    backpressure: str
    steps: tuple[str, ...] = ()
    passes: bool = False

    def __post_init__(self) -> None:
        self.id = _require_text(self.id, "Criterion.id")
        self.backpressure = _require_text(self.backpressure, "Criterion.backpressure")
        if not isinstance(self.description, str):
            raise TypeError("Criterion.description must be a string")
        self.steps = tuple(str(step) for step in self.steps)

    def mark_passed(self) -> None:
        if self.passes:
            raise RuntimeError(f"criterion {self.id!r} already passed")
        self.passes = True

    def copy(self) -> Criterion:
        return Criterion(
            id=self.id,
            description=self.description,
            backpressure=self.backpressure,
            steps=self.steps,
            passes=self.passes,
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Criterion:
        backpressure = payload.get("backpressure", payload.get("check_command"))
        return cls(
            id=payload.get("id", ""),
            description=payload.get("description", ""),
            backpressure=backpressure if backpressure is not None else "",
            steps=tuple(payload.get("steps", ())),
            passes=bool(payload.get("passes", False)),
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "description": self.description,
            "steps": list(self.steps),
            "backpressure": self.backpressure,
            "passes": self.passes,
        }


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token and cost accounting reported by one agent invocation."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")
        if self.cost_usd < 0:
            raise ValueError("cost_usd must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
        }


@dataclass(frozen=True, slots=True)
class IterationOutcome:
    """Record of one Generating/Verifying cycle."""

    iteration: int
    criterion_id: str
    agent_output: str
    usage: TokenUsage
    verification_exit_code: int
    passed: bool
    agent_error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "iteration": self.iteration,
            "criterion_id": self.criterion_id,
            "usage": self.usage.to_dict(),
            "verification_exit_code": self.verification_exit_code,
            "passed": self.passed,
            "agent_error": self.agent_error,
        }


@dataclass(frozen=True, slots=True)
class CriterionResult:
    """Immutable terminal result for one criterion flow."""

    id: str
    status: CriterionStatus
    iterations: int
    tokens_used: int
    duration_ms: int
    pr_url: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is CriterionStatus.SUCCESS

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "status": self.status.value,
            "iterations": self.iterations,
            "tokens_used": self.tokens_used,
            "duration_ms": self.duration_ms,
            "pr_url": self.pr_url,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class OrchestrationMetrics:
    tokens_used: int
    duration_ms: int
    cost_usd: float = 0.0


@dataclass(frozen=True, slots=True)
class OrchestrationResult:
    """Aggregated result of one orchestration run."""

    status: RunStatus
    iterations: int
    criteria_met: tuple[bool, ...]
    metrics: OrchestrationMetrics
    criterion_results: tuple[CriterionResult, ...] | None = None
    pr_url: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "status": self.status.value,
            "iterations": self.iterations,
            "criteria_met": list(self.criteria_met),
            "metrics": {
                "tokens_used": self.metrics.tokens_used,
                "duration_ms": self.metrics.duration_ms,
                "cost_usd": self.metrics.cost_usd,
            },
            "pr_url": self.pr_url,
            "error": self.error,
        }
        if self.criterion_results is not None:
            payload["criterion_results"] = [item.to_dict() for item in self.criterion_results]
        return payload


@dataclass(frozen=True, slots=True)
class Credentials:
    """Secrets resolved once at startup and passed explicitly to collaborators."""

    anthropic_api_key: str | None = field(default=None, repr=False)
    github_token: str | None = field(default=None, repr=False)
    daytona_api_key: str | None = field(default=None, repr=False)

    @classmethod
    def from_environ(
        cls, config: Mapping[str, Any], environ: Mapping[str, str]
    ) -> Credentials:
        """Resolve secret values from the env var names declared in ``[credentials]``."""

        def _lookup(key: str) -> str | None:
            env_name = config.get(key)
            if not isinstance(env_name, str):
                return None
            value = environ.get(env_name, "").strip()
            return value or None

        return cls(
            anthropic_api_key=_lookup("anthropic_api_key_env"),
            github_token=_lookup("github_token_env"),
            daytona_api_key=_lookup("daytona_api_key_env"),
        )


@dataclass(frozen=True, slots=True)
class RepositoryConfig:
    url: str | None = None
    branch: str = constants.DEFAULT_BASE_BRANCH
    working_dir: str | None = None


@dataclass(frozen=True, slots=True)
class GitConfig:
    feature_branch: str | None = None
    commit_author: str = constants.DEFAULT_COMMIT_AUTHOR
    commit_email: str = constants.DEFAULT_COMMIT_EMAIL
    commit_message: str | None = None
    create_pr: bool = False
    pr_title: str | None = None
    pr_body: str | None = None
    install_command: str | None = None


@dataclass(frozen=True, slots=True)
class BudgetConfig:
    max_tokens: int = constants.DEFAULT_MAX_TOKENS

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Iteration, verification and scheduling knobs for one run."""

    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    runtime: RuntimeKind = RuntimeKind.LOCAL
    max_concurrent: int = constants.DEFAULT_MAX_CONCURRENT
    max_iterations_per_criterion: int = constants.DEFAULT_MAX_ITERATIONS_PER_CRITERION
    max_total_iterations: int | None = None
    model: str = constants.DEFAULT_MODEL
    workspace: Path | None = None
    verify_timeout_ms: int = constants.DEFAULT_VERIFY_TIMEOUT_MS
    progress_tail_chars: int = constants.DEFAULT_PROGRESS_TAIL_CHARS
    failure_excerpt_chars: int = constants.DEFAULT_FAILURE_EXCERPT_CHARS
    feedback_commands: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        if self.max_iterations_per_criterion <= 0:
            raise ValueError("max_iterations_per_criterion must be > 0")
        if self.max_total_iterations is not None and self.max_total_iterations <= 0:
            raise ValueError("max_total_iterations must be > 0")
        if self.verify_timeout_ms <= 0:
            raise ValueError("verify_timeout_ms must be > 0")


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Validated, typed view of one run configuration."""

    criteria: tuple[Criterion, ...]
    task: str | None = None
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    git: GitConfig = field(default_factory=GitConfig)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def uses_git(self) -> bool:
        return self.repository.url is not None

    @property
    def summary_text(self) -> str:
        if self.task:
            return self.task
        return "\n".join(f"- {criterion.description or criterion.id}" for criterion in self.criteria)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RunConfig:
        """Build a run config from a validated configuration mapping."""

        execution = config.get("execution", {})
        repository = config.get("repository", {})
        git = config.get("git", {})
        budget = config.get("budget", {})
        criteria = tuple(
            Criterion.from_mapping(item) for item in config.get("acceptance_criteria", ())
        )
        if not criteria and config.get("task"):
            criteria = (
                Criterion(
                    id="task",
                    description=str(config["task"]),
                    backpressure=str(execution.get("task_backpressure", "")),
                ),
            )
        workspace = execution.get("workspace")
        return cls(
            criteria=criteria,
            task=config.get("task"),
            execution=ExecutionSettings(
                mode=ExecutionMode(execution.get("mode", ExecutionMode.SEQUENTIAL.value)),
                runtime=RuntimeKind(execution.get("runtime", RuntimeKind.LOCAL.value)),
                max_concurrent=int(
                    execution.get("max_concurrent", constants.DEFAULT_MAX_CONCURRENT)
                ),
                max_iterations_per_criterion=int(
                    execution.get(
                        "max_iterations_per_criterion",
                        constants.DEFAULT_MAX_ITERATIONS_PER_CRITERION,
                    )
                ),
                max_total_iterations=execution.get("max_total_iterations"),
                model=str(execution.get("model", constants.DEFAULT_MODEL)),
                workspace=Path(workspace) if workspace else None,
                verify_timeout_ms=int(
                    execution.get("verify_timeout_ms", constants.DEFAULT_VERIFY_TIMEOUT_MS)
                ),
                progress_tail_chars=int(
                    execution.get("progress_tail_chars", constants.DEFAULT_PROGRESS_TAIL_CHARS)
                ),
                failure_excerpt_chars=int(
                    execution.get(
                        "failure_excerpt_chars", constants.DEFAULT_FAILURE_EXCERPT_CHARS
                    )
                ),
                feedback_commands=tuple(execution.get("feedback_commands", ())),
            ),
            budget=BudgetConfig(
                max_tokens=int(budget.get("max_tokens", constants.DEFAULT_MAX_TOKENS))
            ),
            repository=RepositoryConfig(
                url=repository.get("url"),
                branch=repository.get("branch", constants.DEFAULT_BASE_BRANCH),
                working_dir=repository.get("working_dir"),
            ),
            git=GitConfig(
                feature_branch=git.get("feature_branch"),
                commit_author=git.get("commit_author", constants.DEFAULT_COMMIT_AUTHOR),
                commit_email=git.get("commit_email", constants.DEFAULT_COMMIT_EMAIL),
                commit_message=git.get("commit_message"),
                create_pr=bool(git.get("create_pr", False)),
                pr_title=git.get("pr_title"),
                pr_body=git.get("pr_body"),
                install_command=git.get("install_command"),
            ),
            raw=config,
        )

    def total_iteration_cap(self) -> int:
        if self.execution.max_total_iterations is not None:
            return self.execution.max_total_iterations
        return self.execution.max_iterations_per_criterion * max(1, len(self.criteria))


def criteria_pass_vector(criteria: Sequence[Criterion]) -> tuple[bool, ...]:
    return tuple(criterion.passes for criterion in criteria)


__all__ = [
    "BudgetConfig",
    "Credentials",
    "Criterion",
    "CriterionResult",
    "CriterionStatus",
    "ExecutionMode",
    "ExecutionSettings",
    "GitConfig",
    "IterationOutcome",
    "JSONScalar",
    "JSONValue",
    "OrchestrationMetrics",
    "OrchestrationResult",
    "RepositoryConfig",
    "RunConfig",
    "RunStatus",
    "RuntimeKind",
    "TokenUsage",
    "criteria_pass_vector",
]
