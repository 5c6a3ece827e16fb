from __future__ import annotations

import asyncio

import pytest

from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import CapacityExceededError, DeadlineExceededError
from sheetguard.services.rate_limiter import ConcurrencyGate, RateLimit, RateLimiter


def test_limiter_gives_up_at_the_deadline() -> None:
    async def runner() -> RateLimiter:
        limiter = RateLimiter(RateLimit(max_calls=2, per_seconds=60))
        await limiter.acquire(service_id="values.get")
        await limiter.acquire(service_id="values.get")
        assert not limiter.has_capacity()
        with pytest.raises(DeadlineExceededError):
            await limiter.acquire(Deadline.after(0.05), "values.get")
        return limiter

    stats = asyncio.run(runner()).get_stats()
    assert stats.admitted == 2
    assert stats.rejected == 1


def test_limiter_waits_for_refill() -> None:
    async def runner() -> RateLimiter:
        limiter = RateLimiter(RateLimit(max_calls=1, per_seconds=0.05))
        await limiter.acquire()
        await limiter.acquire(Deadline.after(2))
        return limiter

    stats = asyncio.run(runner()).get_stats()
    assert stats.admitted == 2
    assert stats.waited == 1


def test_gate_rejects_beyond_queue_depth() -> None:
    async def runner() -> None:
        gate = ConcurrencyGate(max_in_flight=1, max_queue_depth=1)
        release = asyncio.Event()
        entered: list[str] = []

        async def hold(name: str) -> None:
            async with gate.slot(service_id=name):
                entered.append(name)
                await release.wait()

        first = asyncio.create_task(hold("first"))
        await asyncio.sleep(0)
        second = asyncio.create_task(hold("second"))
        await asyncio.sleep(0)
        assert gate.in_flight == 1
        assert gate.queued == 1

        with pytest.raises(CapacityExceededError):
            async with gate.slot(service_id="third"):
                pass

        release.set()
        await asyncio.gather(first, second)
        assert entered == ["first", "second"]
        assert gate.in_flight == 0
        assert gate.get_stats()["rejected"] == 1

    asyncio.run(runner())


def test_gate_waiter_times_out_and_leaves_queue() -> None:
    async def runner() -> None:
        gate = ConcurrencyGate(max_in_flight=1, max_queue_depth=5)
        release = asyncio.Event()

        async def hold() -> None:
            async with gate.slot():
                await release.wait()

        holder = asyncio.create_task(hold())
        await asyncio.sleep(0)

        with pytest.raises(DeadlineExceededError):
            async with gate.slot(Deadline.after(0.01), "values.get"):
                pass
        assert gate.queued == 0

        release.set()
        await holder

    asyncio.run(runner())


def test_gate_admits_waiters_in_arrival_order() -> None:
    async def runner() -> list[int]:
        gate = ConcurrencyGate(max_in_flight=1, max_queue_depth=10)
        admitted: list[int] = []

        async def call(n: int) -> None:
            async with gate.slot(Deadline.after(5), f"call-{n}"):
                admitted.append(n)
                await asyncio.sleep(0.005)

        tasks = []
        for n in range(5):
            tasks.append(asyncio.create_task(call(n)))
            await asyncio.sleep(0)
        assert gate.queued == 4

        await asyncio.gather(*tasks)
        assert gate.get_stats()["waited"] == 4
        return admitted

    assert asyncio.run(runner()) == [0, 1, 2, 3, 4]
