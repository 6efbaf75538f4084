"""Append-only, human-readable progress log kept inside the active backend's workspace."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

from ralph_town.constants import DEFAULT_PROGRESS_TAIL_CHARS, PROGRESS_FILENAME
from ralph_town.sandbox.base import resolve_in_workspace

if TYPE_CHECKING:
    from ralph_town.domain.models import Criterion
    from ralph_town.sandbox.base import ExecutionBackend

_PROGRESS_BLOCK_RE: Final[re.Pattern[str]] = re.compile(r"```progress\n(.*?)```", re.DOTALL)
NO_PROGRESS_BLOCK: Final[str] = "No progress block found"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def extract_progress_block(agent_output: str) -> str:
    """Return the agent's fenced ``progress`` block, or a fixed placeholder."""

    match = _PROGRESS_BLOCK_RE.search(agent_output)
    if match is None:
        return NO_PROGRESS_BLOCK
    return match.group(1).strip()


def format_header(
    criteria: Sequence[Criterion], *, repository: str | None, started_at: str
) -> str:
    lines = [
        "# Ralph Progress Log",
        f"# Started: {started_at}",
        f"# Repository: {repository or 'local'}",
        "",
        "## Criteria",
    ]
    lines.extend(
        f"- [{'x' if criterion.passes else ' '}] {criterion.id}: {criterion.description}"
        for criterion in criteria
    )
    lines.extend(["", "---", ""])
    return "\n".join(lines)


def format_entry(
    *,
    iteration: int,
    criterion_id: str,
    passed: bool,
    progress_block: str,
    timestamp: str,
) -> str:
    verdict = "PASS" if passed else "FAIL"
    return (
        f"\n## Iteration {iteration} - {criterion_id} ({verdict})\n"
        f"Time: {timestamp}\n\n"
        f"{progress_block}\n\n"
        "---\n"
    )


class ProgressStore:
    """Plain file reads/writes of ``progress.txt`` through the backend file API."""

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        filename: str = PROGRESS_FILENAME,
        tail_chars: int = DEFAULT_PROGRESS_TAIL_CHARS,
        clock: Callable[[], str] = _utc_now_iso,
    ) -> None:
        if tail_chars <= 0:
            raise ValueError("tail_chars must be > 0")
        self._backend = backend
        self._filename = filename
        self._tail_chars = tail_chars
        self._clock = clock

    def path_for(self, workdir: str) -> str:
        return resolve_in_workspace(workdir, self._filename)

    async def initialize(
        self,
        workdir: str,
        criteria: Sequence[Criterion],
        *,
        repository: str | None = None,
    ) -> bool:
        """Write the log header unless a log already exists; return True when written."""
        path = self.path_for(workdir)
        if await self._backend.file_exists(path):
            return False
        header = format_header(criteria, repository=repository, started_at=self._clock())
        await self._backend.write_file(path, header)
        return True

    async def append(self, workdir: str, entry_text: str) -> None:
        path = self.path_for(workdir)
        existing = b""
        if await self._backend.file_exists(path):
            existing = await self._backend.read_file(path)
        await self._backend.write_file(path, existing + entry_text.encode("utf-8"))

    async def append_iteration(
        self,
        workdir: str,
        *,
        iteration: int,
        criterion_id: str,
        passed: bool,
        agent_output: str,
    ) -> None:
        await self.append(
            workdir,
            format_entry(
                iteration=iteration,
                criterion_id=criterion_id,
                passed=passed,
                progress_block=extract_progress_block(agent_output),
                timestamp=self._clock(),
            ),
        )

    async def read(self, workdir: str) -> str:
        """Return the last ``tail_chars`` characters of the log, or ``""`` when absent."""
        path = self.path_for(workdir)
        if not await self._backend.file_exists(path):
            return ""
        text = (await self._backend.read_file(path)).decode("utf-8", errors="replace")
        return text[-self._tail_chars :]


__all__ = [
    "NO_PROGRESS_BLOCK",
    "ProgressStore",
    "extract_progress_block",
    "format_entry",
    "format_header",
]
