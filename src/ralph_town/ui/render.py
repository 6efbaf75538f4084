"""Output rendering for the ralph CLI.

File: src/ralph_town/ui/render.py
Last updated: 2026-10-19

Purpose
- Provide a thin plain-text rendering layer for CLI output.

What should be included in this file
- CLIRenderer class with methods for common output patterns.
- Result and validation-issue summaries.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ralph_town.config.schema import ConfigValidationIssue
    from ralph_town.domain.models import OrchestrationResult


class CLIRenderer:
    """Thin CLI output renderer producing deterministic plain text."""

    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def _write(self, line: str) -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def heading(self, text: str) -> None:
        self._write(text)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._write(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Print a formatted ASCII table."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _pad(cells: Sequence[str]) -> str:
            return "  ".join(
                (cells[index] if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ).rstrip()

        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._write(f"  {_pad(list(row))}")

    def result(self, result: OrchestrationResult, *, run_id: str) -> None:
        """Print a human-readable orchestration summary."""

        met = sum(1 for flag in result.criteria_met if flag)
        self.kv("Run ID", run_id)
        self.kv("Status", result.status.value)
        self.kv("Iterations", result.iterations)
        self.kv("Criteria met", f"{met}/{len(result.criteria_met)}")
        self.kv("Tokens used", result.metrics.tokens_used)
        self.kv("Duration", f"{result.metrics.duration_ms} ms")
        if result.pr_url:
            self.kv("Pull request", result.pr_url)
        if result.criterion_results:
            self.section("Criteria:")
            self.table(
                ("ID", "STATUS", "ITERATIONS", "TOKENS", "PR"),
                [
                    (
                        item.id,
                        item.status.value,
                        str(item.iterations),
                        str(item.tokens_used),
                        item.pr_url or "-",
                    )
                    for item in result.criterion_results
                ],
            )
        if result.error:
            self.section("Error:")
            self.text(f"  {result.error}")

    def issues(self, issues: Sequence[ConfigValidationIssue]) -> None:
        if not issues:
            self.text("config OK")
            return
        self.text(f"{len(issues)} config issue(s):")
        self.items([f"{issue.path}: {issue.message}" for issue in issues])


__all__ = ["CLIRenderer"]
