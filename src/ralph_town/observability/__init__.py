"""Observability: structured logging and run telemetry."""

from ralph_town.observability.logging import (
    correlation_scope,
    setup_logging,
    shutdown_logging,
)
from ralph_town.observability.telemetry import (
    LoggingTelemetry,
    NullTelemetry,
    Telemetry,
    TelemetryDispatcher,
)

__all__ = [
    "LoggingTelemetry",
    "NullTelemetry",
    "Telemetry",
    "TelemetryDispatcher",
    "correlation_scope",
    "setup_logging",
    "shutdown_logging",
]
