import asyncio

import pytest

from artscout.search.dispatch_gate import DispatchGate


class FakeTime:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_first_dispatch_does_not_wait():
    time = FakeTime()
    gate = DispatchGate(5, clock=time.clock, sleep=time.sleep)

    assert await gate.wait_turn() == 0.0
    assert gate.last_dispatch == 100.0


@pytest.mark.asyncio
async def test_dispatches_are_spaced_by_min_interval():
    time = FakeTime()
    gate = DispatchGate(5, clock=time.clock, sleep=time.sleep)

    await gate.wait_turn()
    time.now += 2
    waited = await gate.wait_turn()

    assert waited == pytest.approx(3.0)
    assert gate.last_dispatch == pytest.approx(105.0)


@pytest.mark.asyncio
async def test_concurrent_callers_are_released_one_interval_apart():
    time = FakeTime()
    gate = DispatchGate(5, clock=time.clock, sleep=time.sleep)

    await asyncio.gather(*(gate.wait_turn() for _ in range(3)))

    assert time.sleeps == [5.0, 5.0]
    assert time.now == 110.0


@pytest.mark.asyncio
async def test_zero_interval_never_waits():
    time = FakeTime()
    gate = DispatchGate(0, clock=time.clock, sleep=time.sleep)

    for _ in range(3):
        assert await gate.wait_turn() == 0.0
    assert time.sleeps == []
