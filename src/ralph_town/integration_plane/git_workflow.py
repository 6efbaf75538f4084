"""
ralph-town — git workflow collaborator

File: src/ralph_town/integration_plane/git_workflow.py
Last updated: 2026-10-19

Purpose
- Clone the target repository into a backend workspace, commit and push the agent's
  work, and optionally open a pull request.

What should be included in this file
- GitWorkflow protocol consumed by the schedulers.
- BackendGitWorkflow: implementation over a backend's argv git capability.
- Branch/PR helpers for parallel mode.

Functional requirements
- User-controlled values (branch names, messages, URLs, tokens) never reach a shell
  string unquoted; tokens travel only in env overlays.
- The progress log is never committed.
- Failures surface as GitWorkflowError and are treated as run-level errors.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from ralph_town.constants import (
    DEFAULT_PARALLEL_BRANCH_PREFIX,
    DEFAULT_REPO_DIRNAME,
    PROGRESS_FILENAME,
)
from ralph_town.sandbox.base import ExecuteOptions, resolve_in_workspace
from ralph_town.sandbox.errors import ResourceNotFoundError
from ralph_town.sandbox.git_ops import GitCommandError, SanitizationError, validate_branch_name

if TYPE_CHECKING:
    from ralph_town.domain.models import Credentials, Criterion, GitConfig, RepositoryConfig
    from ralph_town.sandbox.base import ExecutionBackend

_GITHUB_REPO_RE: Final[re.Pattern[str]] = re.compile(r"github\.com[:/](.+?)(?:\.git)?$")
_PR_TIMEOUT_MS: Final[int] = 120_000
_INSTALL_TIMEOUT_MS: Final[int] = 600_000
PARALLEL_PR_FOOTER: Final[str] = "Automated by Ralph Loop (parallel mode)"


class GitWorkflowError(RuntimeError):
    """Raised when repository setup, finalization or PR creation fails."""


class GitWorkflow(Protocol):
    async def setup(
        self, backend: ExecutionBackend, repository: RepositoryConfig, git: GitConfig
    ) -> str: ...

    async def finalize(
        self, backend: ExecutionBackend, working_dir: str, git: GitConfig, summary_text: str
    ) -> bool: ...

    async def create_pull_request(
        self,
        backend: ExecutionBackend,
        working_dir: str,
        repository: RepositoryConfig,
        git: GitConfig,
        summary_text: str,
    ) -> str | None: ...


def parse_github_repo(url: str) -> str | None:
    """Return ``owner/name`` for a GitHub remote URL, else None."""

    match = _GITHUB_REPO_RE.search(url.strip())
    if match is None:
        return None
    return match.group(1)


def default_commit_message(summary_text: str) -> str:
    return f"feat: {summary_text[:50]}"


def parallel_branch_name(feature_branch: str | None, criterion_id: str) -> str:
    base = feature_branch or DEFAULT_PARALLEL_BRANCH_PREFIX
    return validate_branch_name(f"{base}/{criterion_id}", field="parallel branch")


def parallel_pr_title(criterion: Criterion) -> str:
    return f"{criterion.id}: {criterion.description}"


def parallel_pr_body(criterion: Criterion) -> str:
    lines = [f"## {criterion.description}", "", "### Steps"]
    lines.extend(f"- {step}" for step in criterion.steps)
    lines.extend(["", f"Backpressure: `{criterion.backpressure}`", "", PARALLEL_PR_FOOTER])
    return "\n".join(lines)


def _is_progress_log(path: str) -> bool:
    return path.endswith(PROGRESS_FILENAME)


class BackendGitWorkflow:
    """Git workflow driven through a backend's argv git capability and ``gh`` CLI."""

    def __init__(self, credentials: Credentials, *, logger: Any | None = None) -> None:
        self._credentials = credentials
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def _require_token(self) -> str:
        token = self._credentials.github_token
        if not token:
            raise GitWorkflowError("GitHub token is required for repository operations")
        return token

    async def setup(
        self, backend: ExecutionBackend, repository: RepositoryConfig, git: GitConfig
    ) -> str:
        if repository.url is None:
            raise GitWorkflowError("repository.url is required for git setup")
        token = self._require_token()
        working_dir = resolve_in_workspace(
            backend.workspace, repository.working_dir or DEFAULT_REPO_DIRNAME
        )
        try:
            await backend.git.clone(
                repository.url, working_dir, branch=repository.branch, token=token
            )
            if git.feature_branch:
                await backend.git.checkout(working_dir, git.feature_branch, create=True)
            await backend.git.configure_identity(
                working_dir, name=git.commit_author, email=git.commit_email
            )
        except (GitCommandError, ResourceNotFoundError, SanitizationError) as exc:
            raise GitWorkflowError(f"repository setup failed: {exc}") from exc

        if git.install_command:
            result = await backend.execute(
                git.install_command,
                ExecuteOptions(cwd=working_dir, timeout_ms=_INSTALL_TIMEOUT_MS),
            )
            if result.exit_code != 0:
                raise GitWorkflowError(
                    f"install command failed ({result.exit_code}): "
                    f"{result.combined_output.strip()[-500:]}"
                )

        self._logger.info(
            "git_setup_completed",
            backend_id=backend.id,
            working_dir=working_dir,
            branch=git.feature_branch or repository.branch,
        )
        return working_dir

    async def finalize(
        self, backend: ExecutionBackend, working_dir: str, git: GitConfig, summary_text: str
    ) -> bool:
        """Commit and push pending changes; return False when there was nothing to commit."""
        try:
            status = await backend.git.status(working_dir)
            files = [path for path in status.changed_files if not _is_progress_log(path)]
            if not files:
                self._logger.info("git_finalize_skipped", backend_id=backend.id, reason="clean")
                return False
            await backend.git.add(working_dir, files)
            await backend.git.commit(
                working_dir,
                git.commit_message or default_commit_message(summary_text),
                author=git.commit_author,
                email=git.commit_email,
            )
            await backend.git.push(
                working_dir,
                branch=status.branch or None,
                token=self._require_token(),
            )
        except (GitCommandError, ResourceNotFoundError, SanitizationError) as exc:
            raise GitWorkflowError(f"finalize failed: {exc}") from exc
        self._logger.info(
            "git_finalize_completed",
            backend_id=backend.id,
            branch=status.branch,
            files=len(files),
        )
        return True

    async def create_pull_request(
        self,
        backend: ExecutionBackend,
        working_dir: str,
        repository: RepositoryConfig,
        git: GitConfig,
        summary_text: str,
    ) -> str | None:
        if not git.create_pr:
            return None
        if repository.url is None:
            raise GitWorkflowError("repository.url is required to create a pull request")
        repo = parse_github_repo(repository.url)
        if repo is None:
            raise GitWorkflowError(f"cannot derive GitHub repository from {repository.url!r}")
        try:
            status = await backend.git.status(working_dir)
        except (GitCommandError, ResourceNotFoundError) as exc:
            raise GitWorkflowError(f"cannot read current branch: {exc}") from exc
        head = status.branch or git.feature_branch
        if not head:
            raise GitWorkflowError("cannot create a pull request without a head branch")

        argv: Sequence[str] = (
            "gh",
            "pr",
            "create",
            "--repo",
            repo,
            "--head",
            head,
            "--base",
            repository.branch,
            "--title",
            git.pr_title or summary_text[:72],
            "--body",
            git.pr_body or summary_text,
        )
        result = await backend.execute(
            shlex.join(argv),
            ExecuteOptions(
                cwd=working_dir,
                timeout_ms=_PR_TIMEOUT_MS,
                env={"GH_TOKEN": self._require_token()},
            ),
        )
        if result.exit_code != 0:
            self._logger.warning(
                "git_pull_request_failed",
                backend_id=backend.id,
                exit_code=result.exit_code,
                stderr=result.stderr.strip()[-500:],
            )
            return None
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
        self._logger.info("git_pull_request_created", backend_id=backend.id, url=url)
        return url


__all__ = [
    "BackendGitWorkflow",
    "GitWorkflow",
    "GitWorkflowError",
    "PARALLEL_PR_FOOTER",
    "default_commit_message",
    "parallel_branch_name",
    "parallel_pr_body",
    "parallel_pr_title",
    "parse_github_repo",
]
