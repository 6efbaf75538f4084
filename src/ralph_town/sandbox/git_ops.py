"""Argument-vector git operations shared by backends that can spawn ``git`` directly."""

from __future__ import annotations

import base64
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Final, TypeAlias

from ralph_town.sandbox.base import ExecuteResult, GitStatus
from ralph_town.sandbox.errors import BackendExecutionError

_BRANCH_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9_.\-/]+$")
_FORBIDDEN_BRANCH_CHARS: Final[tuple[str, ...]] = (" ", "\t", "\r", "\n", ":")

ArgvRunner: TypeAlias = Callable[[Sequence[str], str, Mapping[str, str]], Awaitable[ExecuteResult]]


class SanitizationError(ValueError):
    """Raised when a branch name or other git argument is unsafe."""


class GitCommandError(BackendExecutionError):
    """Raised when a git command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(self.command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


def validate_branch_name(value: str, *, field: str = "branch") -> str:
    """Reject branch names that could be read as options or escape the ref namespace."""

    if not value:
        raise SanitizationError(f"{field} cannot be empty.")
    if any(ch in value for ch in _FORBIDDEN_BRANCH_CHARS):
        raise SanitizationError(
            f"{field} contains forbidden characters (spaces, colon, or control chars)."
        )
    if ".." in value:
        raise SanitizationError(f"{field} cannot contain '..'.")
    if value.startswith("-"):
        raise SanitizationError(f"{field} cannot start with '-'.")
    if not _BRANCH_NAME_RE.fullmatch(value):
        raise SanitizationError(f"{field} contains unsupported characters.")
    return value


def token_auth_env(token: str | None) -> dict[str, str]:
    """Build an env overlay that authenticates HTTPS git without putting the token in argv."""

    if not token:
        return {}
    basic = base64.b64encode(f"x-access-token:{token}".encode()).decode("ascii")
    return {
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "http.extraHeader",
        "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
    }


def parse_porcelain(output: str) -> tuple[str, ...]:
    """Extract changed paths from ``git status --porcelain`` output."""

    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        entry = line[3:]
        if " -> " in entry:
            entry = entry.split(" -> ", 1)[1]
        paths.append(entry.strip().strip('"'))
    return tuple(paths)


class ArgvGitOperations:
    """GitOperations over any runner that executes an argv list inside the backend."""

    __slots__ = ("_run",)

    def __init__(self, runner: ArgvRunner) -> None:
        self._run = runner

    async def _git(
        self,
        cwd: str,
        *args: str,
        env: Mapping[str, str] | None = None,
    ) -> ExecuteResult:
        command = ("git", *args)
        overlay = {"GIT_TERMINAL_PROMPT": "0"}
        overlay.update(env or {})
        result = await self._run(command, cwd, overlay)
        if result.exit_code != 0:
            raise GitCommandError(
                command=command,
                returncode=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    async def clone(
        self,
        url: str,
        path: str,
        *,
        branch: str | None = None,
        token: str | None = None,
    ) -> None:
        args = ["clone"]
        if branch is not None:
            args.extend(["--branch", validate_branch_name(branch)])
        args.extend(["--", url, path])
        await self._git("/", *args, env=token_auth_env(token))

    async def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        name = validate_branch_name(branch)
        if create:
            await self._git(path, "checkout", "-b", name)
        else:
            await self._git(path, "checkout", name)

    async def add(self, path: str, files: Sequence[str]) -> None:
        if not files:
            return
        await self._git(path, "add", "--", *files)

    async def commit(
        self,
        path: str,
        message: str,
        *,
        author: str | None = None,
        email: str | None = None,
    ) -> None:
        args: list[str] = []
        if author is not None and email is not None:
            args.extend(["-c", f"user.name={author}", "-c", f"user.email={email}"])
        args.extend(["commit", "-m", message])
        await self._git(path, *args)

    async def push(self, path: str, *, branch: str | None = None, token: str | None = None) -> None:
        target = validate_branch_name(branch) if branch is not None else "HEAD"
        await self._git(path, "push", "-u", "origin", target, env=token_auth_env(token))

    async def status(self, path: str) -> GitStatus:
        branch = await self._git(path, "branch", "--show-current")
        porcelain = await self._git(path, "status", "--porcelain")
        return GitStatus(
            branch=branch.stdout.strip(),
            changed_files=parse_porcelain(porcelain.stdout),
        )

    async def configure_identity(self, path: str, *, name: str, email: str) -> None:
        await self._git(path, "config", "user.name", name)
        await self._git(path, "config", "user.email", email)

    async def create_worktree(self, path: str, worktree_path: str, branch: str) -> str:
        name = validate_branch_name(branch)
        await self._git(path, "worktree", "add", "-b", name, "--", worktree_path)
        return worktree_path

    async def remove_worktree(self, path: str, worktree_path: str) -> None:
        await self._git(path, "worktree", "remove", "--force", "--", worktree_path)
        await self._git(path, "worktree", "prune")


__all__ = [
    "ArgvGitOperations",
    "ArgvRunner",
    "GitCommandError",
    "SanitizationError",
    "parse_porcelain",
    "token_auth_env",
    "validate_branch_name",
]
