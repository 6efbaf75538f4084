"""Async concurrency primitives for running criterion flows side by side."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterable

T = TypeVar("T")


class BoundedSemaphore:
    """Small wrapper over ``asyncio.Semaphore`` with usage diagnostics."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def snapshot(self) -> dict[str, int]:
        return {
            "limit": self._limit,
            "in_use": self._in_use,
            "available": self.available,
            "peak": self._peak,
        }


@dataclass(slots=True)
class WorkerPool(Generic[T]):
    """
    Run job factories with bounded concurrency and yield results as they finish.

    Jobs are factories rather than coroutine objects, so no job body starts before it
    holds a permit. A failing job does not cancel its siblings; its exception is
    re-raised only after every other job has completed.
    """

    max_concurrency: int
    _semaphore: BoundedSemaphore = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self._semaphore = BoundedSemaphore(self.max_concurrency)

    @property
    def semaphore(self) -> BoundedSemaphore:
        return self._semaphore

    async def run(self, jobs: Iterable[Callable[[], Awaitable[T]]]) -> AsyncIterator[T]:
        tasks: set[asyncio.Task[T]] = set()
        for job in jobs:
            tasks.add(asyncio.create_task(self._run_one(job)))

        first_error: BaseException | None = None
        try:
            while tasks:
                done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                tasks = set(pending)
                for task in done:
                    if task.cancelled():
                        first_error = first_error or asyncio.CancelledError("worker task cancelled")
                        continue
                    exc = task.exception()
                    if exc is not None:
                        first_error = first_error or exc
                        continue
                    yield task.result()
        except (asyncio.CancelledError, GeneratorExit):
            await self._cancel_all(tasks)
            raise
        if first_error is not None:
            raise first_error

    async def _run_one(self, job: Callable[[], Awaitable[T]]) -> T:
        async with self._semaphore.permit():
            return await job()

    async def _cancel_all(self, tasks: set[asyncio.Task[T]]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            with suppress(Exception):
                await asyncio.gather(*tasks, return_exceptions=True)


__all__ = [
    "BoundedSemaphore",
    "WorkerPool",
]
