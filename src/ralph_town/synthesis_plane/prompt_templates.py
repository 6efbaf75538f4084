"""
ralph-town — task prompt rendering

File: src/ralph_town/synthesis_plane/prompt_templates.py
Last updated: 2026-10-19

Purpose
- Render the per-iteration task prompt handed to the code-generating agent.

What should be included in this file
- The task prompt template (description, numbered steps, backpressure check,
  feedback commands, previous failure, progress tail).
- Failure-context construction from a failed verification.

Functional requirements
- Must render deterministically for the same inputs.
- Missing template variables are errors, never silently blank.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from jinja2 import Environment, StrictUndefined, TemplateError

from ralph_town.constants import DEFAULT_FAILURE_EXCERPT_CHARS, DEFAULT_PROGRESS_TAIL_CHARS
from ralph_town.domain.models import Criterion

TASK_PROMPT_TEMPLATE: Final[str] = """\
# Task: {{ description }}

## Steps
{% for step in steps %}{{ loop.index }}. {{ step }}
{% endfor %}
## Backpressure Check
This command must pass for the task to be considered complete:
`{{ backpressure }}`
{% if feedback_commands %}
## Feedback Commands to Run
{% for command in feedback_commands %}- `{{ command }}`
{% endfor %}{% endif %}{% if previous_failure %}
## Previous Attempt Failed
{{ previous_failure }}
Fix this issue in this iteration.
{% endif %}{% if progress %}
## Progress So Far
```
{{ progress }}
```
{% endif %}
Remember: Explore first, then execute, then verify with feedback loops.
"""


class PromptTemplateError(RuntimeError):
    """Raised when the task prompt template cannot be rendered."""


@dataclass(frozen=True, slots=True)
class TaskPromptInputs:
    criterion: Criterion
    progress: str = ""
    previous_failure: str | None = None
    feedback_commands: tuple[str, ...] = ()


class TaskPromptRenderer:
    """Strict Jinja2 renderer for the agent task prompt."""

    def __init__(
        self,
        *,
        template_text: str = TASK_PROMPT_TEMPLATE,
        progress_tail_chars: int = DEFAULT_PROGRESS_TAIL_CHARS,
    ) -> None:
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=False,
            lstrip_blocks=False,
            newline_sequence="\n",
            keep_trailing_newline=True,
        )
        try:
            self._template = self._environment.from_string(template_text)
        except TemplateError as exc:
            raise PromptTemplateError(f"invalid task prompt template: {exc}") from exc
        self._progress_tail_chars = progress_tail_chars

    def render(self, inputs: TaskPromptInputs) -> str:
        progress = inputs.progress[-self._progress_tail_chars :] if inputs.progress else ""
        try:
            return self._template.render(
                description=inputs.criterion.description,
                steps=list(inputs.criterion.steps),
                backpressure=inputs.criterion.backpressure,
                feedback_commands=list(inputs.feedback_commands),
                previous_failure=inputs.previous_failure or "",
                progress=progress,
            )
        except TemplateError as exc:
            raise PromptTemplateError(f"task prompt rendering failed: {exc}") from exc


def build_task_prompt(
    criterion: Criterion,
    *,
    progress: str = "",
    previous_failure: str | None = None,
    feedback_commands: Sequence[str] = (),
) -> str:
    """Render the default task prompt for ``criterion``."""

    return TaskPromptRenderer().render(
        TaskPromptInputs(
            criterion=criterion,
            progress=progress,
            previous_failure=previous_failure,
            feedback_commands=tuple(feedback_commands),
        )
    )


def build_failure_context(
    command: str,
    output: str,
    *,
    excerpt_chars: int = DEFAULT_FAILURE_EXCERPT_CHARS,
) -> str:
    return f"Backpressure command failed: {command}\nOutput: {output[:excerpt_chars]}"


__all__ = [
    "PromptTemplateError",
    "TASK_PROMPT_TEMPLATE",
    "TaskPromptInputs",
    "TaskPromptRenderer",
    "build_failure_context",
    "build_task_prompt",
]
