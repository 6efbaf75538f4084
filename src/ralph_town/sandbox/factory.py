"""Backend construction from validated config and explicit credentials."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, TypeAlias

from ralph_town import constants
from ralph_town.domain.models import Credentials, RuntimeKind
from ralph_town.sandbox.base import ExecutionBackend
from ralph_town.sandbox.cloud import CloudSandboxBackend
from ralph_town.sandbox.container import ContainerBackend
from ralph_town.sandbox.local import LocalBackend
from ralph_town.sandbox.retry import RetryingBackend, RetryPolicy, SleepFn

BackendFactory: TypeAlias = Callable[[], ExecutionBackend]


def create_backend(
    kind: RuntimeKind | str,
    *,
    config: Mapping[str, Any],
    credentials: Credentials,
    workspace: Path | str | None = None,
    retry_policy: RetryPolicy | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> ExecutionBackend:
    """Build one backend of ``kind`` wrapped in the uniform retry layer."""

    runtime = RuntimeKind(kind)
    inner: ExecutionBackend
    if runtime is RuntimeKind.LOCAL:
        inner = LocalBackend(workspace=workspace)
    elif runtime is RuntimeKind.CONTAINER:
        section = dict(config.get("container", {}))
        inner = ContainerBackend(
            image=section.get("image", constants.DEFAULT_CONTAINER_IMAGE),
            base_image=section.get("base_image", constants.DEFAULT_BASE_IMAGE),
            setup_commands=tuple(
                section.get("setup_commands", constants.DEFAULT_SETUP_COMMANDS)
            ),
            host_workspace=workspace,
            workspace_dir=section.get("workspace_dir", constants.DEFAULT_CONTAINER_WORKSPACE),
        )
    else:
        section = dict(config.get("cloud", {}))
        inner = CloudSandboxBackend(
            api_key=credentials.daytona_api_key,
            api_url=section.get("api_url"),
            target=section.get("target"),
            base_image=section.get("base_image", constants.DEFAULT_BASE_IMAGE),
            setup_commands=tuple(
                section.get("setup_commands", constants.DEFAULT_SETUP_COMMANDS)
            ),
            baseline_command=section.get("baseline_command", constants.DEFAULT_BASELINE_COMMAND),
            create_timeout_s=float(section.get("create_timeout_s", 120)),
            workspace_dir=section.get("workspace_dir", constants.DEFAULT_CLOUD_WORKSPACE),
        )
    return RetryingBackend(inner, policy=retry_policy, sleep=sleep)


def backend_factory(
    kind: RuntimeKind | str,
    *,
    config: Mapping[str, Any],
    credentials: Credentials,
    workspace: Path | str | None = None,
    retry_policy: RetryPolicy | None = None,
    isolated: bool = False,
) -> BackendFactory:
    """
    Return a zero-argument factory producing fresh backends.

    With ``isolated`` set and an explicit workspace, each backend gets its own
    ``flow-N`` subdirectory so parallel flows never share a filesystem.
    """

    counter = itertools.count(1)

    def _build() -> ExecutionBackend:
        flow_workspace = workspace
        if isolated and workspace is not None:
            flow_workspace = Path(workspace) / f"flow-{next(counter)}"
        return create_backend(
            kind,
            config=config,
            credentials=credentials,
            workspace=flow_workspace,
            retry_policy=retry_policy,
        )

    return _build


__all__ = [
    "BackendFactory",
    "backend_factory",
    "create_backend",
]
