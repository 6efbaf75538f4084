"""Unit tests for the bounded worker pool and its semaphore."""

from __future__ import annotations

import asyncio

import pytest

from ralph_town.utils.concurrency import BoundedSemaphore, WorkerPool


def _sleeper(value: int, delay: float, tracker: dict[str, int]):
    async def _job() -> int:
        tracker["active"] += 1
        tracker["peak"] = max(tracker["peak"], tracker["active"])
        try:
            await asyncio.sleep(delay)
            return value
        finally:
            tracker["active"] -= 1

    return _job


async def test_pool_never_exceeds_its_cap() -> None:
    tracker = {"active": 0, "peak": 0}
    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)

    results = [value async for value in pool.run(_sleeper(i, 0.01, tracker) for i in range(6))]

    assert sorted(results) == list(range(6))
    assert tracker["peak"] <= 2
    assert pool.semaphore.peak == tracker["peak"]
    assert pool.semaphore.in_use == 0


async def test_results_arrive_in_completion_order() -> None:
    tracker = {"active": 0, "peak": 0}
    pool: WorkerPool[int] = WorkerPool(max_concurrency=3)
    jobs = [_sleeper(1, 0.05, tracker), _sleeper(2, 0.0, tracker), _sleeper(3, 0.02, tracker)]

    results = [value async for value in pool.run(jobs)]

    assert results == [2, 3, 1]


async def test_jobs_do_not_start_before_holding_a_permit() -> None:
    started: list[int] = []
    gate = asyncio.Event()

    def _job(index: int):
        async def _run() -> int:
            started.append(index)
            await gate.wait()
            return index

        return _run

    pool: WorkerPool[int] = WorkerPool(max_concurrency=1)
    collected: list[int] = []

    async def _consume() -> None:
        async for value in pool.run([_job(1), _job(2)]):
            collected.append(value)

    consumer = asyncio.create_task(_consume())
    await asyncio.sleep(0.01)
    assert started == [1]
    gate.set()
    await consumer
    assert collected == [1, 2]


async def test_failing_job_is_raised_after_siblings_finish() -> None:
    tracker = {"active": 0, "peak": 0}

    async def _boom() -> int:
        raise RuntimeError("flow crashed")

    pool: WorkerPool[int] = WorkerPool(max_concurrency=2)
    collected: list[int] = []

    with pytest.raises(RuntimeError, match="flow crashed"):
        async for value in pool.run([_boom, _sleeper(7, 0.01, tracker)]):
            collected.append(value)

    assert collected == [7]


async def test_semaphore_tracks_usage_and_rejects_extra_release() -> None:
    semaphore = BoundedSemaphore(2)

    async with semaphore.permit():
        assert semaphore.snapshot() == {"limit": 2, "in_use": 1, "available": 1, "peak": 1}

    assert semaphore.in_use == 0
    with pytest.raises(RuntimeError):
        semaphore.release()


@pytest.mark.parametrize("limit", [0, -1])
def test_non_positive_limits_are_rejected(limit: int) -> None:
    with pytest.raises(ValueError):
        BoundedSemaphore(limit)
    with pytest.raises(ValueError):
        WorkerPool(max_concurrency=limit)
