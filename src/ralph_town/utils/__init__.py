"""Shared utilities."""

from ralph_town.utils.concurrency import BoundedSemaphore, WorkerPool

__all__ = ["BoundedSemaphore", "WorkerPool"]
