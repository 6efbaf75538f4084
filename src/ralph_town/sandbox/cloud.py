"""
ralph-town — cloud sandbox execution backend

File: src/ralph_town/sandbox/cloud.py
Last updated: 2026-10-19

Purpose
- Run criterion flows inside a remote Daytona sandbox through the async SDK.

What should be included in this file
- Lazy SDK import (optional ``cloud`` extra) with a clear provisioning error.
- Sandbox creation from a declarative image, followed by a baseline capability
  check that fails fast when the runtime interpreter is not reachable.
- Command, file and git operations over the SDK; SDK failures surface as
  BackendTransportError so the retry layer can classify them.
- Idempotent delete on cleanup: a sandbox that is already gone is not an error.

Functional requirements
- Credentials come from the explicit Credentials struct, never from os.environ.
"""

from __future__ import annotations

import asyncio
import importlib
import shlex
import time
from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from ralph_town.constants import (
    DEFAULT_BASE_IMAGE,
    DEFAULT_BASELINE_COMMAND,
    DEFAULT_CLOUD_WORKSPACE,
    DEFAULT_COMMIT_AUTHOR,
    DEFAULT_COMMIT_EMAIL,
    DEFAULT_SETUP_COMMANDS,
    TIMEOUT_EXIT_CODE,
)
from ralph_town.domain.models import RuntimeKind
from ralph_town.sandbox.base import (
    BackendLifecycle,
    ExecuteOptions,
    ExecuteResult,
    GitOperations,
    GitStatus,
    LifecycleState,
    new_backend_id,
    resolve_in_workspace,
    to_bytes,
)
from ralph_town.sandbox.errors import (
    BackendProvisioningError,
    BackendTransportError,
    CredentialsError,
    ResourceNotFoundError,
)
from ralph_town.sandbox.git_ops import GitCommandError, validate_branch_name
from ralph_town.sandbox.retry import RetryPolicy, is_not_found, with_retry

_TIMEOUT_GRACE_SECONDS = 15.0
_GIT_USERNAME = "x-access-token"


def load_sdk() -> Any:
    """Import the Daytona SDK, raising a provisioning error when it is not installed."""

    try:
        return importlib.import_module("daytona")
    except ImportError as exc:
        raise BackendProvisioningError(
            "daytona SDK is not installed; install the 'cloud' extra"
        ) from exc


class CloudSandboxBackend:
    """Execution backend backed by a remote Daytona sandbox."""

    def __init__(
        self,
        *,
        api_key: str | None,
        api_url: str | None = None,
        target: str | None = None,
        base_image: str = DEFAULT_BASE_IMAGE,
        setup_commands: Sequence[str] = DEFAULT_SETUP_COMMANDS,
        baseline_command: str = DEFAULT_BASELINE_COMMAND,
        create_timeout_s: float = 120.0,
        workspace_dir: str = DEFAULT_CLOUD_WORKSPACE,
        env: Mapping[str, str] | None = None,
        sdk: Any | None = None,
        delete_retry: RetryPolicy | None = None,
        backend_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._id = backend_id or new_backend_id(RuntimeKind.CLOUD)
        self._api_key = api_key
        self._api_url = api_url
        self._target = target
        self._base_image = base_image
        self._setup_commands = tuple(setup_commands)
        self._baseline_command = baseline_command
        self._create_timeout_s = create_timeout_s
        self._workspace_dir = workspace_dir
        self._env = dict(env or {})
        self._sdk = sdk
        self._delete_retry = delete_retry
        self._client: Any | None = None
        self._sandbox: Any | None = None
        self._baseline_ok = False
        self._lifecycle = BackendLifecycle(self._id)
        self._git = SandboxGitOperations(self)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> RuntimeKind:
        return RuntimeKind.CLOUD

    @property
    def workspace(self) -> str:
        return self._workspace_dir

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state

    @property
    def git(self) -> GitOperations:
        return self._git

    @property
    def sandbox(self) -> Any:
        if self._sandbox is None:
            raise BackendTransportError("sandbox is not provisioned", backend_id=self._id)
        return self._sandbox

    async def initialize(self) -> None:
        self._lifecycle.begin_initialize()
        if not self._api_key:
            raise CredentialsError("daytona API key is required", backend_id=self._id)
        sdk = self._sdk if self._sdk is not None else load_sdk()
        self._sdk = sdk

        if self._client is None:
            config_kwargs: dict[str, Any] = {"api_key": self._api_key}
            if self._api_url is not None:
                config_kwargs["api_url"] = self._api_url
            if self._target is not None:
                config_kwargs["target"] = self._target
            self._client = sdk.AsyncDaytona(sdk.DaytonaConfig(**config_kwargs))

        if self._sandbox is None:
            image = sdk.Image.base(self._base_image)
            if self._setup_commands:
                image = image.run_commands(*self._setup_commands)
            image = image.workdir(self._workspace_dir)
            params = sdk.CreateSandboxFromImageParams(image=image, env_vars=dict(self._env))
            started = time.perf_counter()
            try:
                self._sandbox = await self._client.create(
                    params,
                    timeout=self._create_timeout_s,
                    on_snapshot_create_logs=self._log_build_line,
                )
            except Exception as exc:
                raise BackendTransportError(
                    f"sandbox creation failed: {exc}", backend_id=self._id
                ) from exc
            self._logger.info(
                "cloud_sandbox_created",
                backend_id=self._id,
                sandbox_id=getattr(self._sandbox, "id", None),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )

        if not self._baseline_ok:
            check = await self._exec(self._baseline_command, cwd=None, env=None, timeout_s=60.0)
            if check.exit_code != 0:
                raise BackendProvisioningError(
                    f"baseline capability check failed ({self._baseline_command!r}): "
                    f"{check.stdout.strip()[:500]}",
                    backend_id=self._id,
                )
            self._baseline_ok = True
            self._logger.info(
                "cloud_baseline_verified",
                backend_id=self._id,
                command=self._baseline_command,
                output=check.stdout.strip()[:200],
            )

        await self._exec(
            shlex.join(["mkdir", "-p", self._workspace_dir]), cwd=None, env=None, timeout_s=60.0
        )
        self._lifecycle.mark_ready()

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult:
        self._lifecycle.require_ready("execute")
        opts = options if options is not None else ExecuteOptions()
        cwd = self._resolve(opts.cwd) if opts.cwd is not None else self._workspace_dir
        return await self._exec(command, cwd=cwd, env=opts.env, timeout_s=opts.timeout_seconds)

    async def write_file(self, path: str, data: bytes | str) -> None:
        self._lifecycle.require_ready("write_file")
        target = self._resolve(path)
        try:
            await self.sandbox.fs.upload_file(to_bytes(data), target)
        except Exception as exc:
            raise BackendTransportError(
                f"upload to {target} failed: {exc}", backend_id=self._id
            ) from exc

    async def read_file(self, path: str) -> bytes:
        self._lifecycle.require_ready("read_file")
        target = self._resolve(path)
        try:
            payload = await self.sandbox.fs.download_file(target)
        except Exception as exc:
            if is_not_found(exc):
                raise FileNotFoundError(target) from exc
            raise BackendTransportError(
                f"download of {target} failed: {exc}", backend_id=self._id
            ) from exc
        return to_bytes(payload)

    async def file_exists(self, path: str) -> bool:
        self._lifecycle.require_ready("file_exists")
        result = await self._exec(
            shlex.join(["test", "-e", self._resolve(path)]), cwd=None, env=None, timeout_s=60.0
        )
        return result.exit_code == 0

    async def cleanup(self) -> None:
        if not self._lifecycle.mark_terminated():
            return
        client = self._client
        sandbox = self._sandbox
        if client is not None and sandbox is not None:
            try:
                await with_retry(
                    lambda: client.delete(sandbox),
                    policy=self._delete_retry,
                    operation_name=f"{self._id}:delete",
                )
            except ResourceNotFoundError:
                self._logger.info("cloud_sandbox_already_deleted", backend_id=self._id)
        if client is not None and hasattr(client, "close"):
            await client.close()
        self._logger.info("backend_terminated", backend_id=self._id)

    async def exec_argv(
        self, argv: Sequence[str], *, cwd: str, env: Mapping[str, str] | None = None
    ) -> ExecuteResult:
        """Run an argv list through the sandbox shell with every argument quoted."""
        self._lifecycle.require_ready("run command")
        return await self._exec(
            shlex.join(argv), cwd=self._resolve(cwd), env=env, timeout_s=120.0
        )

    async def _exec(
        self,
        command: str,
        *,
        cwd: str | None,
        env: Mapping[str, str] | None,
        timeout_s: float,
    ) -> ExecuteResult:
        started = time.perf_counter()
        merged_env = {**self._env, **(env or {})}
        try:
            response = await asyncio.wait_for(
                self.sandbox.process.exec(
                    command,
                    cwd=cwd,
                    env=merged_env or None,
                    timeout=max(1, int(timeout_s)),
                ),
                timeout_s + _TIMEOUT_GRACE_SECONDS,
            )
        except TimeoutError:
            return self._timed_out(started, timeout_s)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            if "timeout" in str(exc).lower() and elapsed >= timeout_s:
                return self._timed_out(started, timeout_s)
            raise BackendTransportError(
                f"remote command failed: {exc}", backend_id=self._id
            ) from exc
        exit_code = getattr(response, "exit_code", None)
        return ExecuteResult(
            stdout=str(getattr(response, "result", "") or ""),
            stderr="",
            exit_code=int(exit_code) if exit_code is not None else 1,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def _timed_out(self, started: float, timeout_s: float) -> ExecuteResult:
        self._logger.warning("command_timed_out", backend_id=self._id, timeout_seconds=timeout_s)
        return ExecuteResult(
            stdout="",
            stderr=f"command timed out after {int(timeout_s * 1000)}ms",
            exit_code=TIMEOUT_EXIT_CODE,
            timed_out=True,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def _log_build_line(self, line: str) -> None:
        self._logger.debug("cloud_image_build_log", backend_id=self._id, line=line)

    def _resolve(self, path: str) -> str:
        return resolve_in_workspace(self._workspace_dir, path)


class SandboxGitOperations:
    """GitOperations over the sandbox SDK's git API, argv for what the SDK lacks."""

    __slots__ = ("_backend",)

    def __init__(self, backend: CloudSandboxBackend) -> None:
        self._backend = backend

    async def _call(self, name: str, operation: Any) -> Any:
        try:
            return await operation
        except Exception as exc:
            raise BackendTransportError(
                f"git {name} failed: {exc}", backend_id=self._backend.id
            ) from exc

    async def _argv(self, path: str, *args: str) -> ExecuteResult:
        command = ("git", *args)
        result = await self._backend.exec_argv(command, cwd=path)
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
        await self._call(
            "clone",
            self._backend.sandbox.git.clone(
                url=url,
                path=path,
                branch=validate_branch_name(branch) if branch is not None else None,
                username=_GIT_USERNAME if token else None,
                password=token,
            ),
        )

    async def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        name = validate_branch_name(branch)
        git = self._backend.sandbox.git
        if create:
            await self._call("create_branch", git.create_branch(path, name))
        await self._call("checkout", git.checkout_branch(path, name))

    async def add(self, path: str, files: Sequence[str]) -> None:
        if not files:
            return
        await self._call("add", self._backend.sandbox.git.add(path, list(files)))

    async def commit(
        self,
        path: str,
        message: str,
        *,
        author: str | None = None,
        email: str | None = None,
    ) -> None:
        await self._call(
            "commit",
            self._backend.sandbox.git.commit(
                path=path,
                message=message,
                author=author or DEFAULT_COMMIT_AUTHOR,
                email=email or DEFAULT_COMMIT_EMAIL,
            ),
        )

    async def push(self, path: str, *, branch: str | None = None, token: str | None = None) -> None:
        if branch is not None:
            validate_branch_name(branch)
        await self._call(
            "push",
            self._backend.sandbox.git.push(
                path=path,
                username=_GIT_USERNAME if token else None,
                password=token,
            ),
        )

    async def status(self, path: str) -> GitStatus:
        raw = await self._call("status", self._backend.sandbox.git.status(path))
        files = tuple(
            str(getattr(item, "name", item)) for item in getattr(raw, "file_status", ()) or ()
        )
        return GitStatus(branch=str(getattr(raw, "current_branch", "") or ""), changed_files=files)

    async def configure_identity(self, path: str, *, name: str, email: str) -> None:
        await self._argv(path, "config", "user.name", name)
        await self._argv(path, "config", "user.email", email)

    async def create_worktree(self, path: str, worktree_path: str, branch: str) -> str:
        name = validate_branch_name(branch)
        await self._argv(path, "worktree", "add", "-b", name, "--", worktree_path)
        return worktree_path

    async def remove_worktree(self, path: str, worktree_path: str) -> None:
        await self._argv(path, "worktree", "remove", "--force", "--", worktree_path)
        await self._argv(path, "worktree", "prune")


__all__ = ["CloudSandboxBackend", "SandboxGitOperations", "load_sdk"]
