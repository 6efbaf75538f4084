"""Shared in-memory backends and stub agents for ralph-town tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import pytest

from ralph_town.domain.models import Criterion, RuntimeKind, TokenUsage
from ralph_town.sandbox.base import (
    BackendLifecycle,
    ExecuteOptions,
    ExecuteResult,
    GitStatus,
    LifecycleState,
    resolve_in_workspace,
    to_bytes,
)
from ralph_town.sandbox.container import IMAGE_CACHE
from ralph_town.synthesis_plane.agent_runner import (
    AgentInvocationError,
    AgentRequest,
    AgentResult,
)

Responder = Callable[["FakeBackend", str, ExecuteOptions], ExecuteResult]


def ok(stdout: str = "") -> ExecuteResult:
    return ExecuteResult(stdout=stdout, stderr="", exit_code=0)


def failed(stderr: str = "failed", exit_code: int = 1) -> ExecuteResult:
    return ExecuteResult(stdout="", stderr=stderr, exit_code=exit_code)


def file_check_responder(
    backend: FakeBackend, command: str, options: ExecuteOptions
) -> ExecuteResult:
    """Answer ``test -f <path>`` from the in-memory filesystem; everything else exits 0."""

    if command.startswith("test -f "):
        path = resolve_in_workspace(options.cwd or backend.workspace, command[len("test -f ") :])
        if path in backend.files:
            return ok()
        return failed(f"{path}: missing")
    return ok()


@dataclass
class FakeGit:
    """Records every git call; status is scripted."""

    calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)
    git_status: GitStatus = field(default_factory=lambda: GitStatus(branch="main"))

    async def clone(self, url: str, path: str, **kwargs: Any) -> None:
        self.calls.append(("clone", (url, path), kwargs))

    async def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        self.calls.append(("checkout", (path, branch), {"create": create}))

    async def add(self, path: str, files: Sequence[str]) -> None:
        self.calls.append(("add", (path, tuple(files)), {}))

    async def commit(self, path: str, message: str, **kwargs: Any) -> None:
        self.calls.append(("commit", (path, message), kwargs))

    async def push(self, path: str, **kwargs: Any) -> None:
        self.calls.append(("push", (path,), kwargs))

    async def status(self, path: str) -> GitStatus:
        self.calls.append(("status", (path,), {}))
        return self.git_status

    async def configure_identity(self, path: str, *, name: str, email: str) -> None:
        self.calls.append(("configure_identity", (path,), {"name": name, "email": email}))

    async def create_worktree(self, path: str, worktree_path: str, branch: str) -> str:
        self.calls.append(("create_worktree", (path, worktree_path, branch), {}))
        return worktree_path

    async def remove_worktree(self, path: str, worktree_path: str) -> None:
        self.calls.append(("remove_worktree", (path, worktree_path), {}))

    def names(self) -> list[str]:
        return [name for name, _, _ in self.calls]


class FakeBackend:
    """In-memory ExecutionBackend with a scripted command responder."""

    def __init__(
        self,
        *,
        backend_id: str = "fake-1",
        workspace: str = "/work",
        responder: Responder | None = file_check_responder,
        initialize_error: BaseException | None = None,
        cleanup_error: BaseException | None = None,
    ) -> None:
        self._id = backend_id
        self._workspace = workspace
        self._responder = responder
        self._initialize_error = initialize_error
        self._cleanup_error = cleanup_error
        self._lifecycle = BackendLifecycle(backend_id)
        self.files: dict[str, bytes] = {}
        self.commands: list[tuple[str, ExecuteOptions]] = []
        self.fake_git = FakeGit()
        self.initialize_calls = 0
        self.cleanup_calls = 0

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> RuntimeKind:
        return RuntimeKind.LOCAL

    @property
    def workspace(self) -> str:
        return self._workspace

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state

    @property
    def git(self) -> FakeGit:
        return self.fake_git

    async def initialize(self) -> None:
        self.initialize_calls += 1
        self._lifecycle.begin_initialize()
        if self._initialize_error is not None:
            raise self._initialize_error
        self._lifecycle.mark_ready()

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult:
        self._lifecycle.require_ready("execute")
        opts = options if options is not None else ExecuteOptions()
        self.commands.append((command, opts))
        if self._responder is None:
            return ok()
        return self._responder(self, command, opts)

    async def write_file(self, path: str, data: bytes | str) -> None:
        self._lifecycle.require_ready("write_file")
        self.files[resolve_in_workspace(self._workspace, path)] = to_bytes(data)

    async def read_file(self, path: str) -> bytes:
        self._lifecycle.require_ready("read_file")
        resolved = resolve_in_workspace(self._workspace, path)
        if resolved not in self.files:
            raise FileNotFoundError(resolved)
        return self.files[resolved]

    async def file_exists(self, path: str) -> bool:
        self._lifecycle.require_ready("file_exists")
        return resolve_in_workspace(self._workspace, path) in self.files

    async def cleanup(self) -> None:
        self.cleanup_calls += 1
        self._lifecycle.mark_terminated()
        if self._cleanup_error is not None:
            raise self._cleanup_error

    def command_texts(self) -> list[str]:
        return [command for command, _ in self.commands]


class FileWritingAgent:
    """Writes ``path`` into the request workdir starting with call number ``succeed_on``."""

    def __init__(
        self,
        *,
        path: str = "done.txt",
        succeed_on: int | None = 1,
        usage: TokenUsage | None = None,
        output: str = "```progress\nwrote the file\n```",
        delay: float = 0.0,
    ) -> None:
        self.path = path
        self.succeed_on = succeed_on
        self.usage = usage if usage is not None else TokenUsage(input_tokens=10, output_tokens=5)
        self.output = output
        self.delay = delay
        self.requests: list[AgentRequest] = []
        self.active = 0
        self.peak_active = 0
        self.calls_by_backend: dict[str, int] = {}

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def run(self, backend: Any, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            count = self.calls_by_backend.get(backend.id, 0) + 1
            self.calls_by_backend[backend.id] = count
            if self.succeed_on is not None and count >= self.succeed_on:
                await backend.write_file(resolve_in_workspace(request.workdir, self.path), "ok")
            return AgentResult(output=self.output, usage=self.usage)
        finally:
            self.active -= 1


class FailingAgent:
    """Raises AgentInvocationError on every call."""

    def __init__(self, message: str = "agent exited with 1: boom") -> None:
        self.message = message
        self.requests: list[AgentRequest] = []

    async def run(self, backend: Any, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        raise AgentInvocationError(self.message, exit_code=1, output="partial")


class BackendPool:
    """Backend factory that hands out fresh FakeBackends and keeps them for inspection."""

    def __init__(self, **backend_kwargs: Any) -> None:
        self._kwargs = backend_kwargs
        self.created: list[FakeBackend] = []

    def __call__(self) -> FakeBackend:
        backend = FakeBackend(
            backend_id=f"fake-{len(self.created) + 1}",
            workspace=f"/work/flow-{len(self.created) + 1}",
            **self._kwargs,
        )
        self.created.append(backend)
        return backend


def make_criteria(count: int, *, backpressure: str = "test -f done.txt") -> tuple[Criterion, ...]:
    return tuple(
        Criterion(id=f"c{index}", description=f"criterion {index}", backpressure=backpressure)
        for index in range(1, count + 1)
    )


def minimal_config(**sections: Mapping[str, Any] | list[Any] | str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "meta": {"schema_version": 1},
        "acceptance_criteria": [
            {"id": "c1", "description": "first", "backpressure": "test -f done.txt"}
        ],
    }
    payload.update(sections)
    return payload


@pytest.fixture(autouse=True)
def _reset_image_cache() -> None:
    IMAGE_CACHE.reset()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backend_pool() -> BackendPool:
    return BackendPool()


@pytest.fixture
def fakes() -> Any:
    """Expose the fake classes and helpers to test modules."""

    class _Fakes:
        Backend = FakeBackend
        Pool = BackendPool
        FileAgent = FileWritingAgent
        FailAgent = FailingAgent
        Git = FakeGit
        criteria = staticmethod(make_criteria)
        config = staticmethod(minimal_config)
        ok = staticmethod(ok)
        failed = staticmethod(failed)
        file_check = staticmethod(file_check_responder)

    return _Fakes
