"""Realtime OKX WebSocket feeds using aiohttp.

MarketFeed subscribes to the public ``tickers`` channel and forwards each
last price to a callback. AccountFeed logs in, subscribes to the private
``orders`` channel and puts parsed account events on a queue.

Both feeds reconnect forever until stop() is called. AccountFeed closes its
``gate`` while disconnected and reopens it only after the reconnect hook
(reconciliation) for the most recent outage has finished, so queued events
are never applied on top of stale state. Any error in a connection attempt is
logged and followed by a reconnect; only cancellation ends run().
"""
import asyncio
import json
import time
from typing import Awaitable, Callable, Optional

from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType
from pydantic import ValidationError

from .auth import ws_login_message
from .errors import FeedError
from .events import PriceTick, parse_order_update, parse_ticker
from .logging_setup import logger

LOGIN_TIMEOUT = 10.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedConnection:
    """One reconnecting WebSocket connection."""

    name = "feed"

    def __init__(self, url: str, inst_id: str, reconnect_delay: float = 5.0):
        self.url = url
        self.inst_id = inst_id
        self.reconnect_delay = reconnect_delay
        self.connected = False
        self.connect_count = 0
        self.last_message_at = time.monotonic()
        self.last_message_ms = _now_ms()
        self.ready = asyncio.Event()
        self._session: Optional[ClientSession] = None
        self._ws: Optional[ClientWebSocketResponse] = None
        self._stopping = False

    def _touch(self) -> None:
        self.last_message_at = time.monotonic()
        self.last_message_ms = _now_ms()

    def seconds_since_last_message(self) -> float:
        return time.monotonic() - self.last_message_at

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
        self._ws = await self._session.ws_connect(self.url)
        self._touch()
        await self._handshake()
        self.connected = True
        self.connect_count += 1
        self.ready.set()
        logger.info(f"WebSocket connected | feed={self.name} url={self.url}")

    async def _handshake(self) -> None:
        raise NotImplementedError

    async def _handle(self, data: dict) -> None:
        raise NotImplementedError

    async def _after_connect(self) -> None:
        pass

    async def _on_disconnect(self) -> None:
        pass

    async def _send(self, message: dict) -> None:
        assert self._ws is not None
        await self._ws.send_str(json.dumps(message))

    async def _read_loop(self) -> None:
        assert self._ws is not None
        async for msg in self._ws:
            if msg.type == WSMsgType.TEXT:
                self._touch()
                if msg.data == "pong":
                    continue
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"Non-JSON message ignored | feed={self.name} data={msg.data[:200]}")
                    continue
                if not isinstance(data, dict):
                    logger.warning(f"Unexpected frame ignored | feed={self.name} data={msg.data[:200]}")
                    continue
                await self._handle(data)
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR):
                break

    async def run(self) -> None:
        """Connect and read until stop(); reconnect after every drop."""
        while not self._stopping:
            try:
                await self.connect()
                await self._after_connect()
                await self._read_loop()
                if not self._stopping:
                    logger.warning(f"WebSocket disconnected | feed={self.name}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"WebSocket error | feed={self.name} error={e!r}")
            finally:
                self.connected = False
                await self._close_ws()
            if self._stopping:
                break
            await self._on_disconnect()
            logger.info(f"Reconnecting | feed={self.name} delay={self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)

    async def ping(self) -> None:
        """Send OKX's text ping; the "pong" reply counts as traffic."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.send_str("ping")

    async def force_reconnect(self) -> None:
        """Drop the socket; run() notices and reconnects."""
        await self._close_ws()

    async def _close_ws(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def stop(self) -> None:
        self._stopping = True
        await self._close_ws()
        if self._session is not None:
            await self._session.close()


class MarketFeed(FeedConnection):
    """Public ticker stream for one pair."""

    name = "market"

    def __init__(self, url: str, inst_id: str, on_tick: Callable[[PriceTick], None], reconnect_delay: float = 5.0):
        super().__init__(url, inst_id, reconnect_delay)
        self.on_tick = on_tick

    async def _handshake(self) -> None:
        await self._send({"op": "subscribe", "args": [{"channel": "tickers", "instId": self.inst_id}]})

    async def _handle(self, data: dict) -> None:
        if data.get("event") == "error":
            logger.error(f"Market feed error | code={data.get('code')} msg={data.get('msg')}")
            return
        if data.get("arg", {}).get("channel") != "tickers":
            return
        for raw in data.get("data") or []:
            try:
                tick = parse_ticker(raw, self.inst_id)
            except ValidationError as e:
                logger.warning(f"Malformed ticker ignored | error={e}")
                continue
            if tick is not None:
                self.on_tick(tick)


class AccountFeed(FeedConnection):
    """Private order-update stream.

    ``queue`` receives AccountEvents in arrival order. ``gate`` is closed on
    disconnect; after a reconnect ``on_reconnect(since_ms)`` is awaited and
    only then is the gate opened again, unless the feed dropped again in the
    meantime. The first connection leaves the gate alone: the bot opens it once startup is done.
    """

    name = "account"

    def __init__(
        self,
        url: str,
        inst_id: str,
        api_key: str,
        secret: str,
        passphrase: str,
        reconnect_delay: float = 1.0,
        on_reconnect: Optional[Callable[[int], Awaitable[object]]] = None,
    ):
        super().__init__(url, inst_id, reconnect_delay)
        self.api_key = api_key
        self.secret = secret
        self.passphrase = passphrase
        self.on_reconnect = on_reconnect
        self.queue: asyncio.Queue = asyncio.Queue()
        self.gate = asyncio.Event()
        self._outage_since_ms: Optional[int] = None
        self._outage_seq = 0
        self._resync_task: Optional[asyncio.Task] = None

    async def _handshake(self) -> None:
        assert self._ws is not None
        await self._send(ws_login_message(self.api_key, self.secret, self.passphrase))
        deadline = time.monotonic() + LOGIN_TIMEOUT
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FeedError("Login response not received")
            msg = await self._ws.receive(timeout=remaining)
            if msg.type != WSMsgType.TEXT:
                raise FeedError(f"Connection closed during login ({msg.type})")
            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError as e:
                raise FeedError(f"Malformed login response: {msg.data[:200]}") from e
            if not isinstance(data, dict):
                continue
            if data.get("event") == "login":
                if str(data.get("code", "0")) != "0":
                    raise FeedError(f"Login failed: {data.get('msg')} (code {data.get('code')})")
                break
            if data.get("event") == "error":
                raise FeedError(f"Login failed: {data.get('msg')} (code {data.get('code')})")
        logger.info("Account feed logged in")
        await self._send({"op": "subscribe", "args": [{"channel": "orders", "instType": "SPOT", "instId": self.inst_id}]})

    async def _after_connect(self) -> None:
        if self._outage_since_ms is None:
            return
        since_ms = self._outage_since_ms
        self._outage_since_ms = None
        self._resync_task = asyncio.get_running_loop().create_task(self._resync(since_ms, self._outage_seq))

    async def _resync(self, since_ms: int, outage_seq: int) -> None:
        try:
            if self.on_reconnect is not None:
                await self.on_reconnect(since_ms)
        except Exception:
            logger.exception("Reconnect hook failed")
        finally:
            if outage_seq == self._outage_seq:
                self.gate.set()
                logger.info(f"Account events resumed | queued={self.queue.qsize()}")
            else:
                # a later outage owns the gate now
                logger.info(f"Newer outage pending, account events stay paused | queued={self.queue.qsize()}")

    async def _on_disconnect(self) -> None:
        if self.connect_count == 0:
            return
        if self._outage_since_ms is None:
            self._outage_since_ms = self.last_message_ms
        self._outage_seq += 1
        self.gate.clear()

    def open_gate(self) -> None:
        self.gate.set()

    async def _handle(self, data: dict) -> None:
        event = data.get("event")
        if event == "error":
            logger.error(f"Account feed error | code={data.get('code')} msg={data.get('msg')}")
            return
        if event == "subscribe":
            logger.info(f"Subscribed | channel={data.get('arg', {}).get('channel')}")
            return
        if data.get("arg", {}).get("channel") != "orders":
            return
        for raw in data.get("data") or []:
            try:
                parsed = parse_order_update(raw, self.inst_id)
            except ValidationError as e:
                logger.warning(f"Malformed order update ignored | error={e}")
                continue
            if parsed is not None:
                self.queue.put_nowait(parsed)

    async def stop(self) -> None:
        await super().stop()
        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()
