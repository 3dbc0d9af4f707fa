import asyncio

import pytest

from lnm_gateway.rate_gate import RateGate, RateGateConfig


@pytest.mark.asyncio
async def test_first_acquire_does_not_wait(clock):
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    await gate.acquire()
    assert clock.sleeps == []
    assert gate.total_acquired == 1


@pytest.mark.asyncio
async def test_concurrent_callers_are_spaced(clock):
    """Request starts are at least min_interval apart under concurrency."""
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    starts = []

    async def caller():
        await gate.acquire()
        starts.append(clock())

    await asyncio.gather(*(caller() for _ in range(4)))

    assert starts == [0.0, 1.0, 2.0, 3.0]
    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert all(gap >= 1.0 for gap in gaps)


@pytest.mark.asyncio
async def test_no_wait_after_interval_elapsed(clock):
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    await gate.acquire()
    clock.advance(5)
    await gate.acquire()
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_cancelled_waiter_releases_slot(clock):
    """Cancelling a waiter frees the gate and does not move its clock."""
    blocked = asyncio.Event()

    async def blocking_sleep(seconds):
        await blocked.wait()

    gate = RateGate(1.0, clock=clock, sleep=blocking_sleep)
    await gate.acquire()

    waiter = asyncio.create_task(gate.acquire())
    await asyncio.sleep(0)
    assert gate.waiting

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert not gate.waiting
    assert gate.total_acquired == 1

    clock.advance(2)
    await asyncio.wait_for(gate.acquire(), timeout=1)
    assert gate.total_acquired == 2


@pytest.mark.asyncio
async def test_defer_pushes_next_slot(clock):
    """A rate-limit reset hint holds the gate closed."""
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    await gate.acquire()
    gate.defer(5.0)
    assert gate.time_until_allowed() == pytest.approx(5.0)
    await gate.acquire()
    assert clock.sleeps == [pytest.approx(5.0)]


def test_defer_ignores_non_positive(clock):
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    gate.defer(0)
    gate.defer(-3)
    assert gate.time_until_allowed() == 0.0


def test_from_config_and_validation(clock):
    gate = RateGate.from_config(RateGateConfig(min_interval=0.25), clock=clock)
    assert gate.min_interval == 0.25
    with pytest.raises(ValueError):
        RateGate(-1)


def test_snapshot_reports_counters(clock):
    gate = RateGate(1.0, clock=clock, sleep=clock.sleep)
    snap = gate.snapshot()
    assert snap["min_interval"] == 1.0
    assert snap["total_acquired"] == 0
    assert snap["time_until_allowed"] == 0.0
