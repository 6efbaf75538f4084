"""Error taxonomy for execution backends."""

from __future__ import annotations


class BackendError(RuntimeError):
    """Base error for execution-backend failures."""

    def __init__(self, message: str, *, backend_id: str | None = None) -> None:
        self.backend_id = backend_id
        prefix = f"[{backend_id}] " if backend_id else ""
        super().__init__(f"{prefix}{message}")


class BackendStateError(BackendError):
    """Raised when an operation is attempted in the wrong lifecycle state."""


class BackendProvisioningError(BackendError):
    """Raised when the underlying resource cannot be acquired."""


class CredentialsError(BackendProvisioningError):
    """Raised when a required credential is missing from the explicit config."""


class BackendExecutionError(BackendError):
    """Raised when a backend cannot run an operation (not when a command exits non-zero)."""


class BackendTransportError(BackendExecutionError):
    """Raised when the transport to a remote backend breaks."""


class ResourceNotFoundError(BackendError):
    """Raised when a provider reports that the addressed resource does not exist."""


__all__ = [
    "BackendError",
    "BackendExecutionError",
    "BackendProvisioningError",
    "BackendStateError",
    "BackendTransportError",
    "CredentialsError",
    "ResourceNotFoundError",
]
