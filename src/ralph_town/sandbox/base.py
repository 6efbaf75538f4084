"""
ralph-town — execution backend contract

File: src/ralph_town/sandbox/base.py
Last updated: 2026-10-19

Purpose
- Define the single capability interface every execution backend implements
  (local host, container, cloud sandbox) and the shared lifecycle bookkeeping.

What should be included in this file
- ExecuteOptions/ExecuteResult, GitStatus and the GitOperations capability subset.
- The ExecutionBackend protocol; callers depend only on this protocol.
- BackendLifecycle: forward-only state tracking (uninitialized -> ready -> terminated).
- backend_session: scoped acquisition that pairs every initialize() with one cleanup().

Functional requirements
- execute() never raises for a failing command; a non-zero exit is a normal result.
- Operations on a backend that is not ready fail fast with BackendStateError.
- Re-initialization after termination fails fast.

Non-functional requirements
- No inheritance between variants; shared behaviour lives in small helpers.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog

from ralph_town.constants import DEFAULT_EXECUTE_TIMEOUT_MS
from ralph_town.domain.models import RuntimeKind
from ralph_town.sandbox.errors import BackendStateError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_RESOURCE_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
_RESOURCE_NAME_MAX_LENGTH: Final[int] = 63

logger = structlog.get_logger(__name__)


class LifecycleState(StrEnum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class ExecuteOptions:
    """Per-command options; ``cwd`` defaults to the backend workspace."""

    cwd: str | None = None
    timeout_ms: int = DEFAULT_EXECUTE_TIMEOUT_MS
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        for key, value in self.env.items():
            if not isinstance(key, str) or not isinstance(value, str):
                raise TypeError("env keys and values must be strings")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True, slots=True)
class ExecuteResult:
    """Result of one command; ``timed_out`` results carry a synthetic exit code."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


@dataclass(frozen=True, slots=True)
class GitStatus:
    """Working-tree status of a checkout."""

    branch: str
    changed_files: tuple[str, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not self.changed_files


class GitOperations(Protocol):
    """Argument-vector version-control capability exposed by every backend."""

    async def clone(
        self,
        url: str,
        path: str,
        *,
        branch: str | None = None,
        token: str | None = None,
    ) -> None: ...

    async def checkout(self, path: str, branch: str, *, create: bool = False) -> None: ...

    async def add(self, path: str, files: Sequence[str]) -> None: ...

    async def commit(
        self,
        path: str,
        message: str,
        *,
        author: str | None = None,
        email: str | None = None,
    ) -> None: ...

    async def push(self, path: str, *, branch: str | None = None, token: str | None = None) -> None: ...

    async def status(self, path: str) -> GitStatus: ...

    async def configure_identity(self, path: str, *, name: str, email: str) -> None: ...

    async def create_worktree(self, path: str, worktree_path: str, branch: str) -> str: ...

    async def remove_worktree(self, path: str, worktree_path: str) -> None: ...


@runtime_checkable
class ExecutionBackend(Protocol):
    """Capability interface shared by the local, container and cloud variants."""

    @property
    def id(self) -> str: ...

    @property
    def kind(self) -> RuntimeKind: ...

    @property
    def workspace(self) -> str: ...

    @property
    def state(self) -> LifecycleState: ...

    @property
    def git(self) -> GitOperations: ...

    async def initialize(self) -> None: ...

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult: ...

    async def write_file(self, path: str, data: bytes | str) -> None: ...

    async def read_file(self, path: str) -> bytes: ...

    async def file_exists(self, path: str) -> bool: ...

    async def cleanup(self) -> None: ...


class BackendLifecycle:
    """Forward-only lifecycle bookkeeping composed into each backend variant."""

    __slots__ = ("_backend_id", "_state")

    def __init__(self, backend_id: str) -> None:
        self._backend_id = backend_id
        self._state = LifecycleState.UNINITIALIZED

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is LifecycleState.READY

    def begin_initialize(self) -> None:
        if self._state is LifecycleState.TERMINATED:
            raise BackendStateError(
                "cannot initialize a terminated backend", backend_id=self._backend_id
            )
        if self._state is LifecycleState.READY:
            raise BackendStateError("backend already initialized", backend_id=self._backend_id)

    def mark_ready(self) -> None:
        self.begin_initialize()
        self._state = LifecycleState.READY

    def require_ready(self, operation: str) -> None:
        if self._state is not LifecycleState.READY:
            raise BackendStateError(
                f"cannot {operation}: backend is {self._state.value}",
                backend_id=self._backend_id,
            )

    def mark_terminated(self) -> bool:
        """Move to terminated; return False when already terminated."""
        if self._state is LifecycleState.TERMINATED:
            return False
        self._state = LifecycleState.TERMINATED
        return True


@asynccontextmanager
async def backend_session(backend: ExecutionBackend) -> AsyncIterator[ExecutionBackend]:
    """Initialize ``backend`` and guarantee exactly one ``cleanup()`` on every exit path."""

    primary: BaseException | None = None
    try:
        await backend.initialize()
        yield backend
    except BaseException as exc:
        primary = exc
        raise
    finally:
        try:
            await backend.cleanup()
        except Exception:
            if primary is None:
                raise
            # The flow error wins; the cleanup failure is still recorded.
            logger.warning("backend_cleanup_failed", backend_id=backend.id, exc_info=True)


def new_backend_id(kind: RuntimeKind) -> str:
    return f"{kind.value}-{uuid.uuid4().hex[:8]}"


def validate_resource_name(name: str) -> str:
    """Validate a container or sandbox name (lowercase DNS label, max 63 chars)."""

    if not name:
        raise ValueError("resource name must not be empty")
    if len(name) > _RESOURCE_NAME_MAX_LENGTH:
        raise ValueError(f"resource name must be at most {_RESOURCE_NAME_MAX_LENGTH} characters")
    if not _RESOURCE_NAME_PATTERN.fullmatch(name):
        raise ValueError(
            "resource name must be lowercase alphanumeric with hyphens, "
            "starting and ending with an alphanumeric character"
        )
    return name


def resolve_in_workspace(workspace: str, path: str) -> str:
    """Resolve ``path`` against ``workspace`` unless it is already absolute."""

    candidate = PurePosixPath(path)
    if candidate.is_absolute():
        return str(candidate)
    return str(PurePosixPath(workspace) / candidate)


def to_bytes(data: bytes | str) -> bytes:
    if isinstance(data, bytes):
        return data
    return data.encode("utf-8")


__all__ = [
    "BackendLifecycle",
    "ExecuteOptions",
    "ExecuteResult",
    "ExecutionBackend",
    "GitOperations",
    "GitStatus",
    "LifecycleState",
    "backend_session",
    "new_backend_id",
    "resolve_in_workspace",
    "to_bytes",
    "validate_resource_name",
]
