"""Unit tests for backend lifecycle bookkeeping and scoped sessions."""

from __future__ import annotations

from typing import Any

import pytest

from ralph_town.sandbox.base import (
    BackendLifecycle,
    ExecuteOptions,
    ExecuteResult,
    LifecycleState,
    backend_session,
    resolve_in_workspace,
    validate_resource_name,
)
from ralph_town.sandbox.errors import BackendProvisioningError, BackendStateError


def test_lifecycle_is_forward_only() -> None:
    lifecycle = BackendLifecycle("b1")
    assert lifecycle.state is LifecycleState.UNINITIALIZED

    lifecycle.mark_ready()
    with pytest.raises(BackendStateError, match="already initialized"):
        lifecycle.mark_ready()

    assert lifecycle.mark_terminated() is True
    assert lifecycle.mark_terminated() is False
    with pytest.raises(BackendStateError, match="terminated"):
        lifecycle.begin_initialize()


def test_require_ready_names_operation_and_backend() -> None:
    lifecycle = BackendLifecycle("b1")

    with pytest.raises(BackendStateError, match=r"\[b1\] cannot execute: backend is uninitialized"):
        lifecycle.require_ready("execute")


async def test_session_cleans_up_once_on_success(fakes: Any) -> None:
    backend = fakes.Backend()

    async with backend_session(backend) as active:
        await active.write_file("a.txt", "x")

    assert backend.initialize_calls == 1
    assert backend.cleanup_calls == 1
    assert backend.state is LifecycleState.TERMINATED


async def test_session_cleans_up_once_when_body_raises(fakes: Any) -> None:
    backend = fakes.Backend()

    with pytest.raises(RuntimeError, match="flow failed"):
        async with backend_session(backend):
            raise RuntimeError("flow failed")

    assert backend.cleanup_calls == 1


async def test_session_cleans_up_when_initialize_fails(fakes: Any) -> None:
    backend = fakes.Backend(initialize_error=BackendProvisioningError("no capacity"))

    with pytest.raises(BackendProvisioningError, match="no capacity"):
        async with backend_session(backend):
            pytest.fail("body must not run")

    assert backend.cleanup_calls == 1


async def test_flow_error_wins_over_cleanup_error(fakes: Any) -> None:
    backend = fakes.Backend(cleanup_error=RuntimeError("cleanup broke"))

    with pytest.raises(ValueError, match="primary"):
        async with backend_session(backend):
            raise ValueError("primary")

    assert backend.cleanup_calls == 1


async def test_cleanup_error_surfaces_when_flow_succeeded(fakes: Any) -> None:
    backend = fakes.Backend(cleanup_error=RuntimeError("cleanup broke"))

    with pytest.raises(RuntimeError, match="cleanup broke"):
        async with backend_session(backend):
            pass


async def test_operations_before_initialize_fail_fast(fakes: Any) -> None:
    backend = fakes.Backend()

    with pytest.raises(BackendStateError):
        await backend.execute("true")


def test_execute_options_validate_inputs() -> None:
    with pytest.raises(ValueError, match="timeout_ms"):
        ExecuteOptions(timeout_ms=0)
    with pytest.raises(TypeError):
        ExecuteOptions(env={"A": 1})  # type: ignore[dict-item]
    assert ExecuteOptions(timeout_ms=1500).timeout_seconds == 1.5


def test_combined_output_joins_streams() -> None:
    assert ExecuteResult(stdout="out", stderr="err", exit_code=1).combined_output == "out\nerr"
    assert ExecuteResult(stdout="", stderr="err", exit_code=1).combined_output == "err"


@pytest.mark.parametrize(
    ("name", "valid"),
    [
        ("ralph-local-1a2b", True),
        ("a", True),
        ("Upper-case", False),
        ("-leading", False),
        ("trailing-", False),
        ("x" * 64, False),
        ("", False),
    ],
)
def test_validate_resource_name(name: str, valid: bool) -> None:
    if valid:
        assert validate_resource_name(name) == name
    else:
        with pytest.raises(ValueError):
            validate_resource_name(name)


def test_resolve_in_workspace() -> None:
    assert resolve_in_workspace("/work", "repo/progress.txt") == "/work/repo/progress.txt"
    assert resolve_in_workspace("/work", "/abs/file") == "/abs/file"
