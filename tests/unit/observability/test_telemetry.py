"""Unit tests for telemetry dispatch."""

from __future__ import annotations

from typing import Any

from ralph_town.domain.models import (
    IterationOutcome,
    OrchestrationMetrics,
    OrchestrationResult,
    RunStatus,
    TokenUsage,
)
from ralph_town.observability.telemetry import LoggingTelemetry, TelemetryDispatcher


class _CapturingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def info(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))

    def warning(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))


def _outcome() -> IterationOutcome:
    return IterationOutcome(
        iteration=1,
        criterion_id="c1",
        agent_output="",
        usage=TokenUsage(input_tokens=4, output_tokens=6),
        verification_exit_code=1,
        passed=False,
    )


def _result() -> OrchestrationResult:
    return OrchestrationResult(
        status=RunStatus.MAX_ITERATIONS,
        iterations=3,
        criteria_met=(False,),
        metrics=OrchestrationMetrics(tokens_used=30, duration_ms=12),
    )


async def test_logging_telemetry_emits_one_event_per_hook() -> None:
    logger = _CapturingLogger()
    dispatcher = TelemetryDispatcher([LoggingTelemetry(logger=logger)])

    await dispatcher.run_started("run-1", {"acceptance_criteria": [{}, {}]})
    await dispatcher.iteration_completed("run-1", "c1", _outcome())
    await dispatcher.run_finished("run-1", _result())

    assert [event for event, _ in logger.events] == [
        "telemetry_run_started",
        "telemetry_iteration_completed",
        "telemetry_run_finished",
    ]
    assert logger.events[0][1]["criteria"] == 2
    assert logger.events[1][1]["tokens"] == 10
    assert logger.events[2][1]["status"] == "max_iterations"


async def test_failing_sink_does_not_block_later_sinks() -> None:
    class _Broken:
        def run_started(self, run_id: str, config: Any) -> None:
            raise KeyError("missing")

        def iteration_completed(self, *args: Any) -> None:
            return None

        def run_finished(self, *args: Any) -> None:
            return None

    calls: list[str] = []

    class _Async:
        async def run_started(self, run_id: str, config: Any) -> None:
            calls.append(run_id)

        async def iteration_completed(self, *args: Any) -> None:
            return None

        async def run_finished(self, *args: Any) -> None:
            return None

    logger = _CapturingLogger()
    dispatcher = TelemetryDispatcher([_Broken(), _Async()], logger=logger)

    await dispatcher.run_started("run-2", {})

    assert calls == ["run-2"]
    assert len(dispatcher.errors) == 1
    assert dispatcher.errors[0].hook == "run_started"
    assert dispatcher.errors[0].error_type == "KeyError"
    assert logger.events[0][0] == "telemetry_hook_failed"


async def test_default_dispatcher_is_a_no_op() -> None:
    dispatcher = TelemetryDispatcher()

    await dispatcher.run_started("run-3", {})
    await dispatcher.run_finished("run-3", _result())

    assert dispatcher.errors == ()
