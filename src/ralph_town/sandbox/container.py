"""
ralph-town — container execution backend

File: src/ralph_town/sandbox/container.py
Last updated: 2026-10-19

Purpose
- Run criterion flows inside a dynamically provisioned Docker container driven
  through the ``docker`` CLI with argument vectors only.

What should be included in this file
- Per-process image cache: an image is built at most once, checked with
  ``docker image inspect`` before building.
- Container lifecycle: ``docker run -d ... tail -f /dev/null`` on initialize,
  ``docker stop`` + ``docker rm`` on cleanup.
- Byte-exact file transfer over ``docker exec -i`` stdin/stdout.

Functional requirements
- Per-command env overlays reach the container as ``-e NAME`` flags whose values
  live only in the docker client environment, never in argv.
- initialize() may be re-entered after a partial failure without leaking a second
  container.
"""

from __future__ import annotations

import asyncio
import dataclasses
import shutil
import tempfile
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, TypeAlias

import structlog

from ralph_town.constants import (
    DEFAULT_BASE_IMAGE,
    DEFAULT_CONTAINER_IMAGE,
    DEFAULT_CONTAINER_WORKSPACE,
    DEFAULT_SETUP_COMMANDS,
    TIMEOUT_EXIT_CODE,
)
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
    validate_resource_name,
)
from ralph_town.sandbox.errors import BackendExecutionError, BackendProvisioningError
from ralph_town.sandbox.git_ops import ArgvGitOperations
from ralph_town.sandbox.process import build_environment, run_process

DockerRunner: TypeAlias = Callable[..., Awaitable[tuple[ExecuteResult, bytes]]]

_BUILD_TIMEOUT_SECONDS = 1800.0
_CONTROL_TIMEOUT_SECONDS = 120.0
# Extra host-side wait so the in-container ``timeout`` fires first.
_EXEC_GRACE_SECONDS = 10.0
_KILL_AFTER_SECONDS = 5
# Exit statuses of coreutils ``timeout`` after TERM and after the follow-up KILL.
_IN_CONTAINER_TIMEOUT_CODES = frozenset({124, 137})

logger = structlog.get_logger(__name__)


async def run_docker(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float = _CONTROL_TIMEOUT_SECONDS,
    stdin: bytes | None = None,
) -> tuple[ExecuteResult, bytes]:
    """Run ``docker <argv>`` on the host."""

    return await run_process(
        ("docker", *argv),
        cwd=None,
        env=build_environment(env),
        timeout_seconds=timeout_seconds,
        stdin=stdin,
    )


def render_dockerfile(base_image: str, setup_commands: Sequence[str], workspace_dir: str) -> str:
    lines = [f"FROM {base_image}"]
    lines.extend(f"RUN {command}" for command in setup_commands)
    lines.append(f"WORKDIR {workspace_dir}")
    return "\n".join(lines) + "\n"


class ImageCache:
    """Process-wide record of images known to exist; one build per image name."""

    def __init__(self) -> None:
        self._ready: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = {}

    def is_ready(self, image: str) -> bool:
        return image in self._ready

    def reset(self) -> None:
        self._ready.clear()
        self._locks.clear()

    async def ensure(self, image: str, dockerfile: str, runner: DockerRunner) -> bool:
        """Make ``image`` available; return True when this call built it."""

        if image in self._ready:
            return False
        lock = self._locks.setdefault(image, asyncio.Lock())
        async with lock:
            if image in self._ready:
                return False
            inspected, _ = await runner(("image", "inspect", image))
            if inspected.exit_code == 0:
                self._ready.add(image)
                logger.info("container_image_reused", image=image)
                return False

            logger.info("container_image_build_started", image=image)
            built, _ = await runner(
                ("build", "-t", image, "-"),
                timeout_seconds=_BUILD_TIMEOUT_SECONDS,
                stdin=dockerfile.encode("utf-8"),
            )
            if built.exit_code != 0:
                raise BackendProvisioningError(
                    f"image build failed for {image}: {built.stderr.strip()[-2000:]}"
                )
            self._ready.add(image)
            logger.info("container_image_built", image=image, duration_ms=built.duration_ms)
            return True


IMAGE_CACHE = ImageCache()


class ContainerBackend:
    """Execution backend backed by one long-running Docker container."""

    def __init__(
        self,
        *,
        image: str = DEFAULT_CONTAINER_IMAGE,
        base_image: str = DEFAULT_BASE_IMAGE,
        setup_commands: Sequence[str] = DEFAULT_SETUP_COMMANDS,
        host_workspace: Path | str | None = None,
        workspace_dir: str = DEFAULT_CONTAINER_WORKSPACE,
        runner: DockerRunner = run_docker,
        image_cache: ImageCache | None = None,
        backend_id: str | None = None,
        logger: Any | None = None,
    ) -> None:
        self._id = backend_id or new_backend_id(RuntimeKind.CONTAINER)
        self._name = validate_resource_name(f"ralph-{self._id}")
        self._image = image
        self._dockerfile = render_dockerfile(base_image, setup_commands, workspace_dir)
        self._requested_host_workspace = (
            Path(host_workspace).resolve() if host_workspace is not None else None
        )
        self._host_workspace: Path | None = self._requested_host_workspace
        self._owns_host_workspace = False
        self._workspace_dir = workspace_dir
        self._runner = runner
        self._images = image_cache if image_cache is not None else IMAGE_CACHE
        self._container_id: str | None = None
        self._lifecycle = BackendLifecycle(self._id)
        self._git = ArgvGitOperations(self._run_argv)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def id(self) -> str:
        return self._id

    @property
    def kind(self) -> RuntimeKind:
        return RuntimeKind.CONTAINER

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
    def container_id(self) -> str | None:
        return self._container_id

    async def initialize(self) -> None:
        self._lifecycle.begin_initialize()
        if self._host_workspace is None:
            self._host_workspace = Path(tempfile.mkdtemp(prefix="ralph-container-"))
            self._owns_host_workspace = True
        else:
            self._host_workspace.mkdir(parents=True, exist_ok=True)

        try:
            await self._images.ensure(self._image, self._dockerfile, self._runner)
        except BackendProvisioningError as exc:
            raise BackendProvisioningError(str(exc), backend_id=self._id) from exc

        if self._container_id is None:
            argv: list[str] = [
                "run",
                "-d",
                "--name",
                self._name,
                "--label",
                f"ralph-town.backend={self._id}",
                "-v",
                f"{self._host_workspace}:{self._workspace_dir}",
                "-w",
                self._workspace_dir,
            ]
            argv.extend([self._image, "tail", "-f", "/dev/null"])
            started, _ = await self._runner(argv)
            if started.exit_code != 0:
                raise BackendProvisioningError(
                    f"container start failed: {started.stderr.strip()}", backend_id=self._id
                )
            self._container_id = started.stdout.strip()

        self._lifecycle.mark_ready()
        self._logger.info(
            "backend_ready",
            backend_id=self._id,
            kind=RuntimeKind.CONTAINER.value,
            container_id=self._container_id,
            image=self._image,
        )

    async def execute(self, command: str, options: ExecuteOptions | None = None) -> ExecuteResult:
        self._lifecycle.require_ready("execute")
        opts = options if options is not None else ExecuteOptions()
        cwd = self._resolve(opts.cwd) if opts.cwd is not None else self._workspace_dir
        # coreutils timeout signals its whole process group inside the container.
        argv = (
            "timeout",
            "-k",
            str(_KILL_AFTER_SECONDS),
            f"{opts.timeout_seconds:g}",
            "sh",
            "-c",
            command,
        )
        result, _ = await self._exec(
            argv,
            cwd=cwd,
            env=opts.env,
            timeout_seconds=opts.timeout_seconds + _KILL_AFTER_SECONDS + _EXEC_GRACE_SECONDS,
        )
        if (
            not result.timed_out
            and result.exit_code in _IN_CONTAINER_TIMEOUT_CODES
            and result.duration_ms >= opts.timeout_ms
        ):
            note = f"command timed out after {opts.timeout_ms}ms"
            result = dataclasses.replace(
                result,
                stderr=f"{result.stderr}\n{note}" if result.stderr else note,
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )
        return result

    async def write_file(self, path: str, data: bytes | str) -> None:
        self._lifecycle.require_ready("write_file")
        target = self._resolve(path)
        result, _ = await self._exec(
            ("sh", "-c", 'mkdir -p "$(dirname "$1")" && cat > "$1"', "sh", target),
            stdin=to_bytes(data),
        )
        if result.exit_code != 0:
            raise BackendExecutionError(
                f"write_file failed for {target}: {result.stderr.strip()}", backend_id=self._id
            )

    async def read_file(self, path: str) -> bytes:
        self._lifecycle.require_ready("read_file")
        target = self._resolve(path)
        result, raw = await self._exec(("cat", "--", target))
        if result.exit_code != 0:
            if "No such file" in result.stderr:
                raise FileNotFoundError(target)
            raise BackendExecutionError(
                f"read_file failed for {target}: {result.stderr.strip()}", backend_id=self._id
            )
        return raw

    async def file_exists(self, path: str) -> bool:
        self._lifecycle.require_ready("file_exists")
        result, _ = await self._exec(("test", "-e", self._resolve(path)))
        if result.exit_code in (0, 1):
            return result.exit_code == 0
        raise BackendExecutionError(
            f"file_exists failed: {result.stderr.strip()}", backend_id=self._id
        )

    async def cleanup(self) -> None:
        if not self._lifecycle.mark_terminated():
            return
        failure: str | None = None
        if self._container_id is not None:
            await self._runner(("stop", "-t", "5", self._container_id))
            removed, _ = await self._runner(("rm", "-f", self._container_id))
            if removed.exit_code != 0 and "No such container" not in removed.stderr:
                failure = removed.stderr.strip()
        if self._owns_host_workspace and self._host_workspace is not None:
            await asyncio.to_thread(shutil.rmtree, self._host_workspace, ignore_errors=True)
        self._logger.info(
            "backend_terminated", backend_id=self._id, container_id=self._container_id
        )
        if failure is not None:
            raise BackendExecutionError(f"container removal failed: {failure}", backend_id=self._id)

    async def _exec(
        self,
        argv: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float = _CONTROL_TIMEOUT_SECONDS,
        stdin: bytes | None = None,
    ) -> tuple[ExecuteResult, bytes]:
        if self._container_id is None:
            raise BackendExecutionError("container is not running", backend_id=self._id)
        docker_argv: list[str] = ["exec"]
        if stdin is not None:
            docker_argv.append("-i")
        docker_argv.extend(["-w", cwd or self._workspace_dir])
        overlay = dict(env or {})
        for name in sorted(overlay):
            docker_argv.extend(["-e", name])
        docker_argv.append(self._container_id)
        docker_argv.extend(argv)
        return await self._runner(
            docker_argv, env=overlay, timeout_seconds=timeout_seconds, stdin=stdin
        )

    async def _run_argv(
        self, argv: Sequence[str], cwd: str, env: Mapping[str, str]
    ) -> ExecuteResult:
        self._lifecycle.require_ready("run git")
        result, _ = await self._exec(argv, cwd=self._resolve(cwd), env=env)
        return result

    def _resolve(self, path: str) -> str:
        return resolve_in_workspace(self._workspace_dir, path)


__all__ = [
    "IMAGE_CACHE",
    "ContainerBackend",
    "DockerRunner",
    "ImageCache",
    "render_dockerfile",
    "run_docker",
]
