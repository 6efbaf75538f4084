"""Command-line interface router for ralph-town."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ralph_town.config import (
    ConfigLoadError,
    ConfigValidationError,
    load_config,
    resolve_credentials,
    validate_runtime_credentials,
)
from ralph_town.control_plane import OrchestratorController, new_run_id
from ralph_town.domain.models import ExecutionMode, RunConfig, RunStatus, RuntimeKind
from ralph_town.integration_plane import BackendGitWorkflow
from ralph_town.observability import LoggingTelemetry, setup_logging, shutdown_logging
from ralph_town.sandbox.factory import backend_factory
from ralph_town.sandbox.retry import RetryPolicy
from ralph_town.synthesis_plane.agent_runner import CliAgentRunner
from ralph_town.ui.render import CLIRenderer

_STATUS_EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SUCCESS: 0,
    RunStatus.MAX_ITERATIONS: 1,
    RunStatus.BUDGET_EXHAUSTED: 1,
    RunStatus.ERROR: 3,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="ralph",
        description=(
            "ralph-town — Ralph Loop runner: generate, verify, retry.\n\n"
            "Common workflows:\n"
            "  ralph run ralph.toml              Run every acceptance criterion\n"
            "  ralph run --mode parallel         Run criteria concurrently\n"
            "  ralph validate ralph.toml         Check a config file\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Run the Ralph Loop over the configured acceptance criteria.",
    )
    run_parser.add_argument(
        "config_path",
        nargs="?",
        default=None,
        help="Path to the run config (default: ./ralph.toml).",
    )
    run_parser.add_argument(
        "--runtime",
        choices=[item.value for item in RuntimeKind],
        default=None,
        help="Execution backend override.",
    )
    run_parser.add_argument(
        "--mode",
        choices=[item.value for item in ExecutionMode],
        default=None,
        help="Scheduling mode override.",
    )
    run_parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Parallel flow cap override.",
    )
    run_parser.add_argument("--model", default=None, help="Agent model override.")
    run_parser.add_argument(
        "--workspace",
        default=None,
        help="Workspace directory override.",
    )
    run_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit the result as JSON.",
    )
    run_parser.set_defaults(handler=_cmd_run)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate a run config and print any issues.",
    )
    validate_parser.add_argument(
        "config_path",
        nargs="?",
        default=None,
        help="Path to the run config (default: ./ralph.toml).",
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config_path, cli_overrides=_cli_overrides(args))
    run_config = RunConfig.from_config(config)
    credentials = resolve_credentials(config)
    try:
        validate_runtime_credentials(config, credentials)
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    run_id = new_run_id()
    handle = setup_logging(config.get("observability"), run_id=run_id)
    try:
        retry = config.get("retry", {})
        agent = config.get("agent", {})
        factory = backend_factory(
            run_config.execution.runtime,
            config=config,
            credentials=credentials,
            workspace=run_config.execution.workspace,
            retry_policy=RetryPolicy(
                max_attempts=int(retry.get("max_attempts", 3)),
                base_delay_ms=int(retry.get("base_delay_ms", 1_000)),
            ),
            isolated=run_config.execution.mode is ExecutionMode.PARALLEL,
        )
        controller = OrchestratorController(
            backend_factory=factory,
            agent=CliAgentRunner(
                api_key=credentials.anthropic_api_key,
                command_template=tuple(agent["command"]),
                timeout_ms=int(agent["timeout_ms"]),
                api_key_env_name=config["credentials"]["anthropic_api_key_env"],
            ),
            git_workflow=BackendGitWorkflow(credentials) if run_config.uses_git else None,
            telemetry=LoggingTelemetry(),
        )
        result = asyncio.run(controller.run(run_config, run_id=run_id))
    finally:
        shutdown_logging(handle)

    exit_code = _STATUS_EXIT_CODES[result.status]
    if args.json:
        _emit_json({"command": "run", "run_id": run_id, **result.to_dict()})
        return exit_code

    renderer = CLIRenderer(verbose=args.verbose)
    renderer.result(result, run_id=run_id)
    if args.verbose:
        renderer.kv("Log file", handle.log_path)
    return exit_code


def _cmd_validate(args: argparse.Namespace) -> int:
    renderer = CLIRenderer(verbose=args.verbose)
    try:
        config = load_config(args.config_path)
    except ConfigValidationError as exc:
        renderer.issues(exc.issues)
        return 2
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    renderer.issues(())
    if args.verbose:
        run_config = RunConfig.from_config(config)
        renderer.kv("Criteria", len(run_config.criteria))
        renderer.kv("Mode", run_config.execution.mode.value)
        renderer.kv("Runtime", run_config.execution.runtime.value)
    return 0


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "execution.runtime": args.runtime,
        "execution.mode": args.mode,
        "execution.max_concurrent": args.max_concurrent,
        "execution.model": args.model,
        "execution.workspace": str(Path(args.workspace).resolve()) if args.workspace else None,
    }


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = ["CLIError", "build_parser", "run_cli"]
