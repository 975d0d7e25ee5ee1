import asyncio

import pytest

from dca_trader.health import ConnectionHealthMonitor


class FakeFeed:
    def __init__(self, name, silent_for=0.0, connected=True):
        self.name = name
        self.silent_for = silent_for
        self.connected = connected
        self.pings = 0
        self.reconnects = 0

    def seconds_since_last_message(self):
        return self.silent_for

    async def ping(self):
        self.pings += 1

    async def force_reconnect(self):
        self.reconnects += 1


class FakeReconciler:
    def __init__(self):
        self.calls = []

    async def reconcile(self, since_ms):
        self.calls.append(since_ms)
        return "report"


@pytest.mark.asyncio
async def test_live_feed_is_pinged():
    feed = FakeFeed("market", silent_for=1.0)
    monitor = ConnectionHealthMonitor([feed], interval=15.0)

    await monitor.check_once()

    assert feed.pings == 1
    assert feed.reconnects == 0


@pytest.mark.asyncio
async def test_silent_feed_is_forced_to_reconnect():
    feed = FakeFeed("account", silent_for=31.0)
    monitor = ConnectionHealthMonitor([feed], interval=15.0)

    await monitor.check_once()

    assert feed.reconnects == 1
    assert feed.pings == 0


@pytest.mark.asyncio
async def test_disconnected_feed_is_skipped():
    feed = FakeFeed("account", silent_for=100.0, connected=False)
    monitor = ConnectionHealthMonitor([feed], interval=15.0)

    await monitor.check_once()

    assert feed.reconnects == 0
    assert feed.pings == 0


@pytest.mark.asyncio
async def test_private_reconnect_runs_reconciliation():
    reconciler = FakeReconciler()
    monitor = ConnectionHealthMonitor([], reconciler=reconciler)

    assert await monitor.handle_private_reconnect(1234) == "report"
    assert reconciler.calls == [1234]
    assert await ConnectionHealthMonitor([]).handle_private_reconnect(1) is None


@pytest.mark.asyncio
async def test_run_checks_periodically_until_stopped():
    feed = FakeFeed("market")
    monitor = ConnectionHealthMonitor([feed], interval=0.01)

    task = asyncio.ensure_future(monitor.run())
    await asyncio.sleep(0.05)
    monitor.stop("test")
    await asyncio.wait_for(task, timeout=1)

    assert feed.pings >= 2
