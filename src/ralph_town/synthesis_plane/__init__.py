"""Agent invocation and task prompt rendering."""

from __future__ import annotations

from ralph_town.synthesis_plane.agent_runner import (
    AgentInvocationError,
    AgentRequest,
    AgentResult,
    AgentRunner,
    CliAgentRunner,
)
from ralph_town.synthesis_plane.prompt_templates import TaskPromptRenderer, build_task_prompt

__all__ = [
    "AgentInvocationError",
    "AgentRequest",
    "AgentResult",
    "AgentRunner",
    "CliAgentRunner",
    "TaskPromptRenderer",
    "build_task_prompt",
]
