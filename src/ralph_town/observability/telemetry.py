"""Run telemetry hooks that never change an orchestration outcome."""

from __future__ import annotations

import inspect
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

if TYPE_CHECKING:
    from ralph_town.domain.models import IterationOutcome, OrchestrationResult

_DEFAULT_ERROR_BUFFER: Final[int] = 256


class Telemetry(Protocol):
    """Hooks fired at run start, after every iteration and at run end.

    Implementations may be sync or async; either return value is accepted.
    """

    def run_started(self, run_id: str, config: Mapping[str, Any]) -> object: ...

    def iteration_completed(
        self, run_id: str, criterion_id: str, outcome: IterationOutcome
    ) -> object: ...

    def run_finished(self, run_id: str, result: OrchestrationResult) -> object: ...


class NullTelemetry:
    def run_started(self, run_id: str, config: Mapping[str, Any]) -> None:
        return None

    def iteration_completed(
        self, run_id: str, criterion_id: str, outcome: IterationOutcome
    ) -> None:
        return None

    def run_finished(self, run_id: str, result: OrchestrationResult) -> None:
        return None


class LoggingTelemetry:
    """Emit telemetry as structured log events."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def run_started(self, run_id: str, config: Mapping[str, Any]) -> None:
        criteria = config.get("acceptance_criteria", ())
        self._logger.info(
            "telemetry_run_started",
            run_id=run_id,
            criteria=len(criteria) if isinstance(criteria, Sequence) else 0,
        )

    def iteration_completed(
        self, run_id: str, criterion_id: str, outcome: IterationOutcome
    ) -> None:
        self._logger.info(
            "telemetry_iteration_completed",
            run_id=run_id,
            criterion_id=criterion_id,
            iteration=outcome.iteration,
            passed=outcome.passed,
            tokens=outcome.usage.total_tokens,
            verification_exit_code=outcome.verification_exit_code,
        )

    def run_finished(self, run_id: str, result: OrchestrationResult) -> None:
        self._logger.info(
            "telemetry_run_finished",
            run_id=run_id,
            status=result.status.value,
            iterations=result.iterations,
            tokens_used=result.metrics.tokens_used,
            duration_ms=result.metrics.duration_ms,
        )


@dataclass(frozen=True, slots=True)
class HookError:
    """Telemetry hook failure captured without interrupting the run."""

    hook: str
    error_type: str
    message: str


class TelemetryDispatcher:
    """Invoke one or more telemetry sinks, logging and suppressing their failures."""

    def __init__(
        self,
        sinks: Sequence[Telemetry] | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._sinks: tuple[Telemetry, ...] = tuple(sinks) if sinks else (NullTelemetry(),)
        self._errors = deque[HookError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def errors(self) -> tuple[HookError, ...]:
        return tuple(self._errors)

    async def run_started(self, run_id: str, config: Mapping[str, Any]) -> None:
        for sink in self._sinks:
            await self._invoke("run_started", sink.run_started, run_id, config)

    async def iteration_completed(
        self, run_id: str, criterion_id: str, outcome: IterationOutcome
    ) -> None:
        for sink in self._sinks:
            await self._invoke(
                "iteration_completed", sink.iteration_completed, run_id, criterion_id, outcome
            )

    async def run_finished(self, run_id: str, result: OrchestrationResult) -> None:
        for sink in self._sinks:
            await self._invoke("run_finished", sink.run_finished, run_id, result)

    async def _invoke(self, hook: str, callback: Any, *args: Any) -> None:
        try:
            maybe_awaitable = callback(*args)
            if inspect.isawaitable(maybe_awaitable):
                await maybe_awaitable
        except Exception as exc:  # noqa: BLE001
            self._errors.append(
                HookError(hook=hook, error_type=type(exc).__name__, message=str(exc))
            )
            self._logger.warning(
                "telemetry_hook_failed",
                hook=hook,
                error_type=type(exc).__name__,
                error=str(exc),
            )


__all__ = [
    "HookError",
    "LoggingTelemetry",
    "NullTelemetry",
    "Telemetry",
    "TelemetryDispatcher",
]
