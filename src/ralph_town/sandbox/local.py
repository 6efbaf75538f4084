"""Local host execution backend: commands run as host subprocesses in a workspace dir."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog

from ralph_town.domain.models import RuntimeKind
from ralph_town.sandbox.base import (
    BackendLifecycle,
    ExecuteOptions,
    ExecuteResult,
    GitOperations,
    LifecycleState,
    new_backend_id,
    resolve_in_workspace,
    to_bytes,
)
from ralph_town.sandbox.errors import BackendProvisioningError
from ralph_town.sandbox.git_ops import ArgvGitOperations
from ralph_town.sandbox.process import build_environment, run_process


class LocalBackend:
    """
    Run commands directly on the host.

    When no workspace is supplied, ``initialize`` creates a temporary directory and
    ``cleanup`` removes it recursively. A supplied workspace is never deleted.
    """

    def __init__(
        self,
        *,
        workspace: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        inherit_host_env: bool = True,
        backend_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._id = backend_id or new_backend_id(RuntimeKind.LOCAL)
        self._requested_workspace = Path(workspace).resolve() if workspace is not None else None
        self._workspace: Path | None = self._requested_workspace
        self._owns_workspace = False
        self._env = dict(env or {})
        self._inherit_host_env = inherit_host_env
        self._lifecycle = BackendLifecycle(self._id)
        self._git = ArgvGitOperations(self._run_argv)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> RuntimeKind:
        return RuntimeKind.LOCAL

    @property
    def workspace(self) -> str:
        if self._workspace is None:
            return ""
        return str(self._workspace)

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state

    @property
    def git(self) -> GitOperations:
        return self._git

    async def initialize(self) -> None:
        self._lifecycle.begin_initialize()
        if self._requested_workspace is None:
            if self._workspace is None:
                self._workspace = Path(tempfile.mkdtemp(prefix="ralph-local-"))
                self._owns_workspace = True
        else:
            try:
                self._requested_workspace.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise BackendProvisioningError(
                    f"workspace is not usable: {self._requested_workspace}: {exc}",
                    backend_id=self._id,
                ) from exc
        self._lifecycle.mark_ready()
        self._logger.info(
            "backend_ready",
            backend_id=self._id,
            kind=RuntimeKind.LOCAL.value,
            workspace=self.workspace,
            owns_workspace=self._owns_workspace,
        )

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult:
        self._lifecycle.require_ready("execute")
        opts = options if options is not None else ExecuteOptions()
        cwd = self._resolve(opts.cwd) if opts.cwd is not None else self.workspace
        env = build_environment({**self._env, **opts.env}, inherit=self._inherit_host_env)
        result, _ = await run_process(
            command, cwd=cwd, env=env, timeout_seconds=opts.timeout_seconds
        )
        return result

    async def write_file(self, path: str, data: bytes | str) -> None:
        self._lifecycle.require_ready("write_file")
        target = Path(self._resolve(path))
        payload = to_bytes(data)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)

        await asyncio.to_thread(_write)

    async def read_file(self, path: str) -> bytes:
        self._lifecycle.require_ready("read_file")
        return await asyncio.to_thread(Path(self._resolve(path)).read_bytes)

    async def file_exists(self, path: str) -> bool:
        self._lifecycle.require_ready("file_exists")
        return await asyncio.to_thread(Path(self._resolve(path)).exists)

    async def cleanup(self) -> None:
        if not self._lifecycle.mark_terminated():
            return
        if self._owns_workspace and self._workspace is not None:
            await asyncio.to_thread(shutil.rmtree, self._workspace, ignore_errors=True)
            self._logger.info("backend_workspace_removed", backend_id=self._id)
        self._logger.info("backend_terminated", backend_id=self._id)

    async def _run_argv(
        self, argv: Sequence[str], cwd: str, env: Mapping[str, str]
    ) -> ExecuteResult:
        self._lifecycle.require_ready("run git")
        merged = build_environment({**self._env, **env}, inherit=self._inherit_host_env)
        result, _ = await run_process(
            argv,
            cwd=self._resolve(cwd),
            env=merged,
            timeout_seconds=ExecuteOptions().timeout_seconds,
        )
        return result

    def _resolve(self, path: str) -> str:
        return resolve_in_workspace(self.workspace, path)


__all__ = ["LocalBackend"]
