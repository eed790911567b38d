from __future__ import annotations

import asyncio

import pytest

from rate_limiter import RateLimiter


def test_first_call_runs_immediately(clock) -> None:
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    asyncio.run(limiter.wait())

    assert clock.sleeps == []


def test_second_call_waits_for_remaining_delay(clock) -> None:
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    async def scenario() -> None:
        await limiter.wait()
        clock.now += 0.5
        await limiter.wait()

    asyncio.run(scenario())

    assert clock.sleeps == [pytest.approx(1.5)]


def test_no_wait_once_delay_elapsed(clock) -> None:
    limiter = RateLimiter(2.0, clock=clock, sleep=clock.sleep)

    async def scenario() -> None:
        await limiter.wait()
        clock.now += 3.0
        await limiter.wait()

    asyncio.run(scenario())

    assert clock.sleeps == []


def test_execute_accepts_sync_and_async_callables(clock) -> None:
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    async def double(value: int) -> int:
        return value * 2

    async def scenario() -> tuple[int, int]:
        first = await limiter.execute(lambda value: value + 1, 1)
        second = await limiter.execute(double, value=4)
        return first, second

    assert asyncio.run(scenario()) == (2, 8)
    assert clock.sleeps == [pytest.approx(1.0)]


def test_execute_propagates_errors(clock) -> None:
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    async def boom() -> None:
        raise ValueError("boom")

    with pytest.raises(ValueError, match="boom"):
        asyncio.run(limiter.execute(boom))
