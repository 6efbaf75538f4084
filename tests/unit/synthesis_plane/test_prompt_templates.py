"""
ralph-town — unit tests for task prompt rendering

File: tests/unit/synthesis_plane/test_prompt_templates.py
Last updated: 2026-10-19

Purpose
- Validate deterministic, strict rendering of the agent task prompt.

What this test file should cover
- Section presence and ordering for optional inputs.
- Progress tail truncation and failure-context construction.
- Template errors surfacing as PromptTemplateError.
"""

from __future__ import annotations

import pytest

from ralph_town.domain.models import Criterion
from ralph_town.synthesis_plane.prompt_templates import (
    PromptTemplateError,
    TaskPromptInputs,
    TaskPromptRenderer,
    build_failure_context,
    build_task_prompt,
)


def _criterion() -> Criterion:
    return Criterion(
        id="health",
        description="Add a /health endpoint",
        backpressure="npm test -- health",
        steps=("Create the route", "Return 200 with {status: ok}"),
    )


def test_minimal_prompt_has_task_steps_and_check() -> None:
    prompt = build_task_prompt(_criterion())

    assert prompt.startswith("# Task: Add a /health endpoint\n")
    assert "1. Create the route\n2. Return 200 with {status: ok}\n" in prompt
    assert "`npm test -- health`" in prompt
    assert "Previous Attempt Failed" not in prompt
    assert "Progress So Far" not in prompt
    assert "Feedback Commands" not in prompt
    assert prompt.rstrip().endswith("verify with feedback loops.")


def test_optional_sections_render_in_order() -> None:
    prompt = build_task_prompt(
        _criterion(),
        progress="## Iteration 1 - health (FAIL)",
        previous_failure="Backpressure command failed: npm test\nOutput: 1 failing",
        feedback_commands=["npm run lint", "npm run typecheck"],
    )

    feedback = prompt.index("## Feedback Commands to Run")
    failure = prompt.index("## Previous Attempt Failed")
    progress = prompt.index("## Progress So Far")
    assert feedback < failure < progress
    assert "- `npm run lint`\n- `npm run typecheck`\n" in prompt
    assert "Output: 1 failing\nFix this issue in this iteration." in prompt


def test_rendering_is_deterministic() -> None:
    inputs = TaskPromptInputs(criterion=_criterion(), progress="p", previous_failure="f")
    renderer = TaskPromptRenderer()

    assert renderer.render(inputs) == renderer.render(inputs)


def test_progress_is_truncated_to_tail() -> None:
    renderer = TaskPromptRenderer(progress_tail_chars=4)

    prompt = renderer.render(TaskPromptInputs(criterion=_criterion(), progress="abcdefgh"))

    assert "```\nefgh\n```" in prompt
    assert "abcd" not in prompt


def test_missing_template_variable_is_an_error() -> None:
    renderer = TaskPromptRenderer(template_text="{{ description }} {{ not_provided }}")

    with pytest.raises(PromptTemplateError, match="rendering failed"):
        renderer.render(TaskPromptInputs(criterion=_criterion()))


def test_invalid_template_is_rejected_at_construction() -> None:
    with pytest.raises(PromptTemplateError, match="invalid task prompt template"):
        TaskPromptRenderer(template_text="{% for x in %}")


def test_failure_context_truncates_output() -> None:
    context = build_failure_context("pytest -q", "E" * 50, excerpt_chars=10)

    assert context == "Backpressure command failed: pytest -q\nOutput: EEEEEEEEEE"
