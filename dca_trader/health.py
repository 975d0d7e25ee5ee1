"""Connection health monitor for the WebSocket feeds.

Every ``interval`` seconds each connected feed is checked: one that has been
silent for more than two intervals is forced to reconnect, any other gets a
ping. Private-feed reconnects run reconciliation before account events flow
again (see AccountFeed.on_reconnect).
"""
import asyncio
from typing import Optional, Sequence

from .logging_setup import logger


class ConnectionHealthMonitor:
    def __init__(self, feeds: Sequence, interval: float = 15.0, reconciler=None):
        self.feeds = list(feeds)
        self.interval = interval
        self.reconciler = reconciler
        self._stop_event = asyncio.Event()

    @property
    def silence_timeout(self) -> float:
        return self.interval * 2

    async def check_once(self) -> None:
        for feed in self.feeds:
            if not feed.connected:
                continue
            silent_for = feed.seconds_since_last_message()
            if silent_for > self.silence_timeout:
                logger.warning(f"Feed silent too long, forcing reconnect | feed={feed.name} silent_for={silent_for:.1f}s")
                await feed.force_reconnect()
            else:
                await feed.ping()

    async def handle_private_reconnect(self, since_ms: int):
        """Reconnect hook for the account feed: reconcile the outage window."""
        if self.reconciler is None:
            return None
        logger.info(f"Private feed reconnected, reconciling | since_ms={since_ms}")
        return await self.reconciler.reconcile(since_ms)

    async def run(self) -> None:
        """Check feeds until stop() is called."""
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_once()
            except Exception:
                logger.exception("Health check failed")

    def stop(self, reason: Optional[str] = None) -> None:
        if reason:
            logger.info(f"Stopping health monitor | reason={reason}")
        self._stop_event.set()
