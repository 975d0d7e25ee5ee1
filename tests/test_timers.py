import asyncio

import pytest

from dca_trader.timers import ScheduledTasks


@pytest.mark.asyncio
async def test_scheduled_callback_runs_once():
    timers = ScheduledTasks()
    calls = []

    async def cb():
        calls.append("ran")

    timers.schedule("k", 0.0, cb)
    assert timers.pending("k")
    await asyncio.sleep(0.01)

    assert calls == ["ran"]
    assert not timers.pending("k")


@pytest.mark.asyncio
async def test_rescheduling_replaces_previous_task():
    timers = ScheduledTasks()
    calls = []

    async def first():
        calls.append("first")

    async def second():
        calls.append("second")

    timers.schedule("k", 0.01, first)
    timers.schedule("k", 0.01, second)
    await asyncio.sleep(0.05)

    assert calls == ["second"]


@pytest.mark.asyncio
async def test_cancel_and_cancel_all():
    timers = ScheduledTasks()
    calls = []

    async def cb():
        calls.append(1)

    timers.schedule("a", 0.01, cb)
    timers.schedule("b", 0.01, cb)
    assert timers.cancel("a")
    assert not timers.cancel("a")
    timers.cancel_all()
    await asyncio.sleep(0.03)

    assert calls == []
    assert not timers.pending("b")


@pytest.mark.asyncio
async def test_callback_can_reschedule_its_own_key():
    timers = ScheduledTasks()
    calls = []

    async def cb():
        calls.append(1)
        if len(calls) < 3:
            timers.schedule("loop", 0.0, cb)

    timers.schedule("loop", 0.0, cb)
    await asyncio.sleep(0.05)

    assert calls == [1, 1, 1]


@pytest.mark.asyncio
async def test_failing_callback_is_logged_not_raised():
    timers = ScheduledTasks()

    async def boom():
        raise RuntimeError("boom")

    task = timers.schedule("k", 0.0, boom)
    await asyncio.sleep(0.01)

    assert task.done()
    assert task.exception() is None
