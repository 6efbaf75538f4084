"""
ralph-town — agent invocation

File: src/ralph_town/synthesis_plane/agent_runner.py
Last updated: 2026-10-19

Purpose
- Invoke the code-generating agent as an opaque function that returns free-form
  output plus token usage.

What should be included in this file
- AgentRequest/AgentResult and the AgentRunner protocol.
- CliAgentRunner: runs an agent CLI inside the active backend.
- Usage parsing from JSON output or the ``__USAGE_JSON__`` marker.

Functional requirements
- The agent API key reaches the process as an env overlay, never in the command text.
- Failures surface as AgentInvocationError, a backend execution error.
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from ralph_town.constants import DEFAULT_AGENT_COMMAND, DEFAULT_AGENT_TIMEOUT_MS, DEFAULT_MODEL
from ralph_town.domain.models import TokenUsage
from ralph_town.sandbox.base import ExecuteOptions
from ralph_town.sandbox.errors import BackendExecutionError

if TYPE_CHECKING:
    from ralph_town.sandbox.base import ExecutionBackend

_USAGE_MARKER_RE: Final[re.Pattern[str]] = re.compile(
    r"__USAGE_JSON__(\{.*?\})__USAGE_JSON__", re.DOTALL
)

logger = structlog.get_logger(__name__)


class AgentInvocationError(BackendExecutionError):
    """Raised when the agent process fails or times out."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        output: str = "",
        usage: TokenUsage | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.output = output
        self.usage = usage if usage is not None else TokenUsage()
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class AgentRequest:
    task: str
    workdir: str
    failure_context: str | None = None
    model_id: str = DEFAULT_MODEL


@dataclass(frozen=True, slots=True)
class AgentResult:
    output: str
    usage: TokenUsage


class AgentRunner(Protocol):
    """Agent invocation contract used by the criterion state machine."""

    async def run(self, backend: ExecutionBackend, request: AgentRequest) -> AgentResult: ...


def _as_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)) and value >= 0:
        return int(value)
    return 0


def _usage_from_mapping(payload: Mapping[str, Any]) -> TokenUsage:
    usage = payload.get("usage")
    usage_map: Mapping[str, Any] = usage if isinstance(usage, Mapping) else payload
    cost = payload.get("total_cost_usd", payload.get("cost_usd", usage_map.get("cost_usd", 0.0)))
    return TokenUsage(
        input_tokens=_as_count(usage_map.get("input_tokens")),
        output_tokens=_as_count(usage_map.get("output_tokens")),
        cost_usd=float(cost) if isinstance(cost, (int, float)) and cost >= 0 else 0.0,
    )


def parse_agent_output(raw: str) -> AgentResult:
    """
    Split agent stdout into output text and usage.

    Accepted shapes, in order: a JSON object with ``result`` and ``usage`` keys; text
    carrying a ``__USAGE_JSON__{...}__USAGE_JSON__`` marker (stripped from the output);
    plain text with zero usage.
    """

    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, Mapping) and "result" in payload:
            return AgentResult(output=str(payload["result"]), usage=_usage_from_mapping(payload))

    match = _USAGE_MARKER_RE.search(raw)
    if match is not None:
        try:
            marker = json.loads(match.group(1))
        except json.JSONDecodeError:
            marker = {}
        text = (raw[: match.start()] + raw[match.end() :]).strip()
        usage = _usage_from_mapping(marker) if isinstance(marker, Mapping) else TokenUsage()
        return AgentResult(output=text, usage=usage)

    return AgentResult(output=raw, usage=TokenUsage())


def render_agent_argv(template: Sequence[str], *, prompt: str, model: str) -> list[str]:
    return [part.replace("{prompt}", prompt).replace("{model}", model) for part in template]


class CliAgentRunner:
    """Run a command-line agent inside the backend's filesystem."""

    def __init__(
        self,
        *,
        api_key: str | None,
        command_template: Sequence[str] = DEFAULT_AGENT_COMMAND,
        timeout_ms: int = DEFAULT_AGENT_TIMEOUT_MS,
        api_key_env_name: str = "ANTHROPIC_API_KEY",
        logger: Any | None = None,
    ) -> None:
        if not command_template:
            raise ValueError("command_template must not be empty")
        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        self._api_key = api_key
        self._template = tuple(command_template)
        self._timeout_ms = timeout_ms
        self._api_key_env_name = api_key_env_name
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def run(self, backend: ExecutionBackend, request: AgentRequest) -> AgentResult:
        argv = render_agent_argv(self._template, prompt=request.task, model=request.model_id)
        env = {self._api_key_env_name: self._api_key} if self._api_key else {}
        self._logger.info(
            "agent_invocation_started",
            backend_id=backend.id,
            model=request.model_id,
            task_preview=request.task[:100],
        )
        result = await backend.execute(
            shlex.join(argv),
            ExecuteOptions(cwd=request.workdir, timeout_ms=self._timeout_ms, env=env),
        )
        if result.exit_code != 0:
            reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
            partial = parse_agent_output(result.stdout)
            raise AgentInvocationError(
                f"agent {reason}: {result.combined_output.strip()[-1000:]}",
                exit_code=result.exit_code,
                output=partial.output,
                usage=partial.usage,
            )
        parsed = parse_agent_output(result.stdout)
        self._logger.info(
            "agent_invocation_finished",
            backend_id=backend.id,
            input_tokens=parsed.usage.input_tokens,
            output_tokens=parsed.usage.output_tokens,
            duration_ms=result.duration_ms,
        )
        return parsed


__all__ = [
    "AgentInvocationError",
    "AgentRequest",
    "AgentResult",
    "AgentRunner",
    "CliAgentRunner",
    "parse_agent_output",
    "render_agent_argv",
]
