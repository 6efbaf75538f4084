"""
ralph-town — transient-failure classification and retry

File: src/ralph_town/sandbox/retry.py
Last updated: 2026-10-19

Purpose
- Classify backend failures as transient, not-found or terminal.
- Retry transient failures with linearly scaled backoff (attempt * base delay).
- Apply the retry wrapper uniformly at the backend-operation boundary through
  RetryingBackend, so call sites never decide retry policy themselves.

Functional requirements
- Transient failures are retried up to the attempt cap; the last error is re-raised.
- Terminal failures propagate immediately with one invocation.
- Not-found failures surface as ResourceNotFoundError without retry.

Non-functional requirements
- Sleep is injectable so tests observe delays without waiting.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final, TypeAlias, TypeVar

import structlog

from ralph_town.constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_BASE_DELAY_MS
from ralph_town.sandbox.errors import (
    BackendStateError,
    CredentialsError,
    ResourceNotFoundError,
)

if TYPE_CHECKING:
    from ralph_town.domain.models import RuntimeKind
    from ralph_town.sandbox.base import (
        ExecuteOptions,
        ExecuteResult,
        ExecutionBackend,
        GitOperations,
        GitStatus,
        LifecycleState,
    )

T = TypeVar("T")
SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RetryCallback: TypeAlias = Callable[[int, BaseException, float], None]

TRANSIENT_MARKERS: Final[tuple[str, ...]] = (
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "connection reset",
    "connection refused",
    "socket hang up",
    "temporary failure in name resolution",
    "name or service not known",
    "network",
    "timed out",
    "timeout",
    "503",
    "502",
    "429",
)
NOT_FOUND_MARKERS: Final[tuple[str, ...]] = ("not found", "does not exist", "404")

_TRANSIENT_STATUS_CODES: Final[frozenset[int]] = frozenset({429, 502, 503})
_NEVER_RETRY: Final[tuple[type[BaseException], ...]] = (
    BackendStateError,
    CredentialsError,
    TypeError,
    ValueError,
)

logger = structlog.get_logger(__name__)


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded linear backoff: the delay before retry N is ``N * base_delay_ms``."""

    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")

    def delay_seconds(self, attempt: int) -> float:
        if attempt <= 0:
            raise ValueError("attempt must be > 0")
        return (attempt * self.base_delay_ms) / 1000.0


def _status_code(error: BaseException) -> int | None:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify a failure by type, HTTP status and case-insensitive message markers."""

    if isinstance(error, ResourceNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, _NEVER_RETRY):
        return ErrorKind.TERMINAL
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT

    status = _status_code(error)
    if status in _TRANSIENT_STATUS_CODES:
        return ErrorKind.TRANSIENT
    if status == 404:
        return ErrorKind.NOT_FOUND

    message = str(error).lower()
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    return ErrorKind.TERMINAL


def is_transient(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.TRANSIENT


def is_not_found(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.NOT_FOUND


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryCallback | None = None,
    operation_name: str = "operation",
) -> T:
    """Run ``operation`` and retry transient failures per ``policy``."""

    resolved = policy if policy is not None else RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.NOT_FOUND:
                if isinstance(exc, ResourceNotFoundError):
                    raise
                raise ResourceNotFoundError(f"{operation_name}: {exc}") from exc
            if kind is ErrorKind.TERMINAL or attempt >= resolved.max_attempts:
                raise

            delay = resolved.delay_seconds(attempt)
            logger.warning(
                "backend_operation_retry",
                operation=operation_name,
                attempt=attempt,
                max_attempts=resolved.max_attempts,
                delay_seconds=delay,
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            await sleep(delay)


class RetryingGitOperations:
    """GitOperations decorator that routes every call through ``with_retry``."""

    __slots__ = ("_inner", "_retry")

    def __init__(
        self,
        inner: GitOperations,
        retry: Callable[[str, Callable[[], Awaitable[Any]]], Awaitable[Any]],
    ) -> None:
        self._inner = inner
        self._retry = retry

    async def clone(
        self,
        url: str,
        path: str,
        *,
        branch: str | None = None,
        token: str | None = None,
    ) -> None:
        await self._retry(
            "git.clone", lambda: self._inner.clone(url, path, branch=branch, token=token)
        )

    async def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        await self._retry("git.checkout", lambda: self._inner.checkout(path, branch, create=create))

    async def add(self, path: str, files: Sequence[str]) -> None:
        await self._retry("git.add", lambda: self._inner.add(path, files))

    async def commit(
        self,
        path: str,
        message: str,
        *,
        author: str | None = None,
        email: str | None = None,
    ) -> None:
        await self._retry(
            "git.commit",
            lambda: self._inner.commit(path, message, author=author, email=email),
        )

    async def push(self, path: str, *, branch: str | None = None, token: str | None = None) -> None:
        await self._retry("git.push", lambda: self._inner.push(path, branch=branch, token=token))

    async def status(self, path: str) -> GitStatus:
        result: GitStatus = await self._retry("git.status", lambda: self._inner.status(path))
        return result

    async def configure_identity(self, path: str, *, name: str, email: str) -> None:
        await self._retry(
            "git.configure_identity",
            lambda: self._inner.configure_identity(path, name=name, email=email),
        )

    async def create_worktree(self, path: str, worktree_path: str, branch: str) -> str:
        result: str = await self._retry(
            "git.create_worktree",
            lambda: self._inner.create_worktree(path, worktree_path, branch),
        )
        return result

    async def remove_worktree(self, path: str, worktree_path: str) -> None:
        await self._retry(
            "git.remove_worktree", lambda: self._inner.remove_worktree(path, worktree_path)
        )


class RetryingBackend:
    """
    ExecutionBackend decorator applying ``with_retry`` to every operation.

    ``cleanup`` is passed through unchanged: it runs once per ``initialize`` and
    variants that release remote resources retry that release internally.
    """

    def __init__(
        self,
        inner: ExecutionBackend,
        *,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._inner = inner
        self._policy = policy if policy is not None else RetryPolicy()
        self._sleep = sleep
        self._git = RetryingGitOperations(inner.git, self._run)

    @property
    def inner(self) -> ExecutionBackend:
        return self._inner

    @property
    def id(self) -> str:
        return self._inner.id

    @property
    def kind(self) -> RuntimeKind:
        return self._inner.kind

    @property
    def workspace(self) -> str:
        return self._inner.workspace

    @property
    def state(self) -> LifecycleState:
        return self._inner.state

    @property
    def git(self) -> GitOperations:
        return self._git

    async def _run(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            policy=self._policy,
            sleep=self._sleep,
            operation_name=f"{self._inner.id}:{name}",
        )

    async def initialize(self) -> None:
        await self._run("initialize", self._inner.initialize)

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult:
        return await self._run("execute", lambda: self._inner.execute(command, options))

    async def write_file(self, path: str, data: bytes | str) -> None:
        await self._run("write_file", lambda: self._inner.write_file(path, data))

    async def read_file(self, path: str) -> bytes:
        return await self._run("read_file", lambda: self._inner.read_file(path))

    async def file_exists(self, path: str) -> bool:
        return await self._run("file_exists", lambda: self._inner.file_exists(path))

    async def cleanup(self) -> None:
        await self._inner.cleanup()


__all__ = [
    "ErrorKind",
    "NOT_FOUND_MARKERS",
    "RetryCallback",
    "RetryPolicy",
    "RetryingBackend",
    "RetryingGitOperations",
    "SleepFn",
    "TRANSIENT_MARKERS",
    "classify_error",
    "is_not_found",
    "is_transient",
    "with_retry",
]
