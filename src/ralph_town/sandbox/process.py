"""Async subprocess execution with timeout-driven process-tree termination."""

from __future__ import annotations

import asyncio
import os
import signal
import time
from collections.abc import Mapping, Sequence

import psutil
import structlog

from ralph_town.constants import TIMEOUT_EXIT_CODE

# Exit status a shell reports when the command cannot be started.
SPAWN_FAILURE_EXIT_CODE = 127

# Bound on draining pipes after a kill; orphans outside the group may still hold them.
_DRAIN_GRACE_SECONDS = 2.0
from ralph_town.sandbox.base import ExecuteResult

logger = structlog.get_logger(__name__)


def build_environment(
    overlay: Mapping[str, str] | None,
    *,
    inherit: bool = True,
) -> dict[str, str]:
    """Merge ``overlay`` over the host environment (or just ``PATH`` when not inheriting)."""

    if inherit:
        merged = dict(os.environ)
    else:
        merged = {}
        host_path = os.environ.get("PATH")
        if host_path:
            merged["PATH"] = host_path
    if overlay is not None:
        merged.update(overlay)
    return merged


async def run_process(
    command: str | Sequence[str],
    *,
    cwd: str | None,
    env: Mapping[str, str],
    timeout_seconds: float,
    stdin: bytes | None = None,
) -> tuple[ExecuteResult, bytes]:
    """
    Run a shell string or an argv list to completion or until the timeout.

    Returns the decoded result plus raw stdout bytes for byte-exact file reads.
    On timeout the whole process tree is killed and ``TIMEOUT_EXIT_CODE`` is reported.
    """

    stdin_pipe = asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL
    started = time.perf_counter()
    try:
        if isinstance(command, str):
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                env=dict(env),
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        else:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=dict(env),
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
    except OSError as exc:
        logger.warning("command_spawn_failed", cwd=cwd, error=str(exc))
        failed = ExecuteResult(
            stdout="",
            stderr=str(exc),
            exit_code=SPAWN_FAILURE_EXIT_CODE,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return failed, b""

    communicate = asyncio.ensure_future(process.communicate(input=stdin))
    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(asyncio.shield(communicate), timeout_seconds)
    except TimeoutError:
        timed_out = True
        await kill_process_tree(process.pid)
        stdout, stderr = await _drain(communicate)
    except asyncio.CancelledError:
        signal_process_tree(process.pid)
        communicate.cancel()
        raise

    duration_ms = int((time.perf_counter() - started) * 1000)
    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if timed_out:
        logger.warning(
            "command_timed_out",
            timeout_seconds=timeout_seconds,
            pid=process.pid,
            duration_ms=duration_ms,
        )
        note = f"command timed out after {int(timeout_seconds * 1000)}ms"
        stderr_text = f"{stderr_text}\n{note}" if stderr_text else note
        exit_code = TIMEOUT_EXIT_CODE
    else:
        exit_code = process.returncode if process.returncode is not None else 1

    result = ExecuteResult(
        stdout=stdout_text,
        stderr=stderr_text,
        exit_code=exit_code,
        timed_out=timed_out,
        duration_ms=duration_ms,
    )
    return result, stdout


def signal_process_tree(pid: int) -> list[psutil.Process]:
    """
    SIGKILL the process group led by ``pid`` and every known descendant.

    The group kill reaches children orphaned by an exited shell; the psutil sweep
    reaches descendants that started their own session. Returns the descendants.
    """

    descendants: list[psutil.Process] = []
    try:
        descendants = psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        pass
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    for victim in descendants:
        try:
            victim.kill()
        except psutil.NoSuchProcess:
            continue
    return descendants


async def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` with its group and descendants; vanished processes are ignored."""

    descendants = signal_process_tree(pid)
    # The direct child is reaped by asyncio; only descendants are awaited here.
    if descendants:
        await asyncio.to_thread(psutil.wait_procs, descendants, timeout=5)


async def _drain(communicate: asyncio.Future[tuple[bytes, bytes]]) -> tuple[bytes, bytes]:
    try:
        return await asyncio.wait_for(communicate, _DRAIN_GRACE_SECONDS)
    except TimeoutError:
        logger.warning("command_output_abandoned", grace_seconds=_DRAIN_GRACE_SECONDS)
        return b"", b""


__all__ = [
    "SPAWN_FAILURE_EXIT_CODE",
    "build_environment",
    "kill_process_tree",
    "run_process",
    "signal_process_tree",
]
