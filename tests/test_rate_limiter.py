from __future__ import annotations

import asyncio
import time

import pytest

from thread_rotator.utils import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_try_acquire_respects_budget_per_thread() -> None:
    clock = FakeClock()
    limiter = RateLimiter(3, 10.0, clock=clock)

    assert [limiter.try_acquire("a") for _ in range(4)] == [True, True, True, False]
    assert limiter.try_acquire("b") is True
    assert limiter.recorded("a") == 3

    clock.now += 9.9
    assert limiter.try_acquire("a") is False

    clock.now += 0.1
    assert limiter.try_acquire("a") is True
    assert limiter.recorded("a") == 1


def test_window_never_exceeds_maximum() -> None:
    clock = FakeClock()
    limiter = RateLimiter(2, 5.0, clock=clock)
    admitted: list[float] = []

    for _ in range(60):
        if limiter.try_acquire("t"):
            admitted.append(clock.now)
        clock.now += 0.5

    for start in admitted:
        in_window = [moment for moment in admitted if start <= moment < start + 5.0]
        assert len(in_window) <= 2


def test_wait_suspends_until_slot_frees() -> None:
    limiter = RateLimiter(2, 0.3)

    async def runner() -> float:
        start = time.monotonic()
        for _ in range(3):
            await limiter.wait("thread")
        return time.monotonic() - start

    elapsed = asyncio.run(runner())
    assert elapsed >= 0.25


def test_waiters_are_released_in_arrival_order() -> None:
    limiter = RateLimiter(1, 0.05)
    released: list[int] = []

    async def worker(index: int) -> None:
        await limiter.wait("thread")
        released.append(index)

    async def runner() -> None:
        tasks = []
        for index in range(4):
            tasks.append(asyncio.create_task(worker(index)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)

    asyncio.run(runner())
    assert released == [0, 1, 2, 3]


def test_sweep_removes_expired_records() -> None:
    clock = FakeClock()
    limiter = RateLimiter(5, 10.0, clock=clock)
    limiter.try_acquire("old")
    clock.now += 6.0
    limiter.try_acquire("fresh")
    clock.now += 5.0

    assert limiter.sweep() == 1
    assert limiter.recorded("old") == 0
    assert limiter.recorded("fresh") == 1


def test_rejects_non_positive_budget() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0, 1.0)
