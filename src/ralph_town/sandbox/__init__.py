"""
ralph-town — execution backends

File: src/ralph_town/sandbox/__init__.py
Last updated: 2026-10-19

Purpose
- Interchangeable execution environments (local host, container, cloud sandbox)
  behind one capability interface, plus the retry layer applied at its boundary.

Functional requirements
- Every initialize() is paired with exactly one cleanup() via backend_session.
"""

from __future__ import annotations

from ralph_town.sandbox.base import (
    ExecuteOptions,
    ExecuteResult,
    ExecutionBackend,
    GitStatus,
    LifecycleState,
    backend_session,
)
from ralph_town.sandbox.errors import (
    BackendError,
    BackendExecutionError,
    BackendProvisioningError,
    BackendStateError,
    BackendTransportError,
    CredentialsError,
    ResourceNotFoundError,
)

__all__ = [
    "BackendError",
    "BackendExecutionError",
    "BackendProvisioningError",
    "BackendStateError",
    "BackendTransportError",
    "CredentialsError",
    "ExecuteOptions",
    "ExecuteResult",
    "ExecutionBackend",
    "GitStatus",
    "LifecycleState",
    "ResourceNotFoundError",
    "backend_session",
]
