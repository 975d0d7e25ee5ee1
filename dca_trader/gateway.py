import asyncio
import json
import random
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .auth import rest_headers
from .errors import ApiError, GatewayError, OrderRejectedError, RateLimitError
from .events import Fill, OkxFill, OkxInstrument, OkxPendingOrder, OkxTicker
from .logging_setup import logger
from .position import Order, OrderSide
from .rate_limit_policy import RateLimitManager

# Codes OKX uses for overload and maintenance; everything else is a rejection
TRANSIENT_API_CODES = frozenset({"50001", "50004", "50011", "50013", "50026", "50061"})
PAGE_LIMIT = 100


def generate_client_id() -> str:
    """``bot<ms><6 random>`` truncated to the 32 characters OKX accepts."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"bot{int(time.time() * 1000)}{suffix}"[:32]


@dataclass(frozen=True)
class Instrument:
    """Price and size granularity for the traded pair."""
    inst_id: str
    tick_size: Decimal
    lot_size: Decimal
    min_size: Decimal = Decimal("0")

    def round_price(self, price: Decimal, side: OrderSide) -> Decimal:
        """Round to the tick grid: sells up, buys down.

        Rounding away from the fill keeps a profit sell strictly above its
        buy price and an averaging-down buy strictly below it.
        """
        rounding = ROUND_CEILING if side is OrderSide.SELL else ROUND_FLOOR
        return (price / self.tick_size).to_integral_value(rounding=rounding) * self.tick_size

    def round_size(self, size: Decimal) -> Decimal:
        return (size / self.lot_size).to_integral_value(rounding=ROUND_FLOOR) * self.lot_size


class ExchangeGateway(ABC):
    """Request/response operations the cycle needs from the venue.

    All price/size values use Decimal. Every method raises GatewayError (or a
    subclass) on failure; no order is placed or cancelled unless the call
    returned normally.
    """

    @abstractmethod
    async def place_order(self, side: OrderSide, price: Decimal, size: Decimal, client_id: Optional[str] = None) -> Order:
        """Place a GTC limit order and return it with the echoed price/size."""

    @abstractmethod
    async def cancel_order(self, order_id: str, client_id: Optional[str] = None) -> bool:
        """Cancel an open order; False if the venue refused the cancel."""

    @abstractmethod
    async def list_open_orders(self) -> List[Order]:
        """All open orders for the traded pair."""

    @abstractmethod
    async def list_fills_since(self, since_ms: int) -> List[Fill]:
        """Executions for the traded pair at or after ``since_ms``."""

    @abstractmethod
    async def get_last_price(self) -> Decimal:
        """Last trade price from the ticker endpoint."""


class AsyncOkxGateway(ExchangeGateway):
    """Async OKX REST gateway using aiohttp.

    Features:
    - Request signing (OK-ACCESS-* headers).
    - Bounded retries with a delay that grows with the attempt number for
      network errors, HTTP 5xx/429 and OKX overload codes.
    - Business rejections (``sCode != "0"``) surface immediately as
      OrderRejectedError.
    - Per-endpoint rate-limit policy awaited before every request.

    Usage:
        async with AsyncOkxGateway(...) as gateway:
            order = await gateway.place_order(OrderSide.BUY, price, size)
    """

    def __init__(
        self,
        api_key: str,
        secret: str,
        passphrase: str,
        *,
        inst_id: str = "ETH-USDT",
        base_url: str = "https://www.okx.com",
        sandbox: bool = False,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.passphrase = passphrase
        self.inst_id = inst_id
        self.base_url = base_url.rstrip("/")
        self.sandbox = sandbox
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.instrument: Optional[Instrument] = None
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, credentials, exchange_config, rate_limiter: Optional[RateLimitManager] = None) -> "AsyncOkxGateway":
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            passphrase=credentials.passphrase,
            inst_id=exchange_config.inst_id,
            base_url=exchange_config.base_url,
            sandbox=exchange_config.sandbox,
            timeout=exchange_config.timeout,
            max_retries=exchange_config.max_retries,
            retry_delay=exchange_config.retry_delay,
            rate_limiter=rate_limiter,
        )

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={"User-Agent": "dca-trader/0.1"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )

    async def close(self) -> None:
        if self.session:
            await self.session.close()

    async def _send(self, method: str, request_path: str, body: Optional[dict], private: bool) -> Dict[str, Any]:
        """One HTTP round trip. Raises GatewayError for anything retryable."""
        if not self.session:
            raise GatewayError("Session not initialized; use 'async with' or open()")

        body_str = json.dumps(body) if body is not None else ""
        if private:
            headers = rest_headers(self.api_key, self.secret, self.passphrase, method, request_path, body_str, simulated=self.sandbox)
        else:
            headers = {"Content-Type": "application/json"}
            if self.sandbox:
                headers["x-simulated-trading"] = "1"

        endpoint = request_path.split("?", 1)[0]
        if not await self.rate_limiter.acquire(endpoint):
            raise RateLimitError(f"Local rate limit wait exceeded for {endpoint}")

        url = f"{self.base_url}{request_path}"
        try:
            async with self.session.request(method, url, headers=headers, data=body_str or None) as resp:
                text = await resp.text()
                if resp.status == 429:
                    raise RateLimitError(f"429: {text}")
                if resp.status >= 500:
                    raise GatewayError(f"{resp.status}: {text}")
                try:
                    payload = json.loads(text) if text else {}
                except json.JSONDecodeError:
                    raise GatewayError(f"{resp.status}: non-JSON response {text[:200]}")
        except asyncio.TimeoutError as e:
            raise GatewayError(f"Request timeout: {e}")
        except aiohttp.ClientError as e:
            raise GatewayError(f"Request failed: {e}")

        code = str(payload.get("code", "0"))
        if code == "0":
            return payload
        data = payload.get("data") or []
        if data and isinstance(data[0], dict) and "sCode" in data[0]:
            # per-order result; the caller decides how to surface it
            return payload
        message = payload.get("msg") or f"HTTP {resp.status}"
        if code in TRANSIENT_API_CODES:
            raise GatewayError(f"API busy: {message} (code {code})")
        raise ApiError(f"API error: {message} (code {code})", code=code)

    async def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None, private: bool = True) -> Dict[str, Any]:
        """Execute a request, retrying transient failures with a growing delay."""
        request_path = path if path.startswith("/") else f"/{path}"
        if params:
            request_path = f"{request_path}?{urlencode(params)}"

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._send(method, request_path, body, private)
            except ApiError:
                raise
            except GatewayError as e:
                logger.warning(f"API request failed | attempt={attempt}/{self.max_retries} path={request_path} error={e}")
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(self.retry_delay * attempt)
        raise GatewayError(f"No attempts made for {request_path}")

    @staticmethod
    def _first_result(payload: Dict[str, Any], action: str) -> Dict[str, Any]:
        data = payload.get("data") or []
        if not data:
            raise GatewayError(f"{action}: empty response data")
        result = data[0]
        s_code = str(result.get("sCode", "0"))
        if s_code != "0":
            raise OrderRejectedError(f"{action} rejected: {result.get('sMsg')} (code {s_code})", code=s_code)
        return result

    async def get_instrument(self) -> Instrument:
        """Fetch and cache tick/lot sizes for the pair."""
        payload = await self._request(
            "GET", "/api/v5/public/instruments",
            params={"instType": "SPOT", "instId": self.inst_id}, private=False,
        )
        data = payload.get("data") or []
        if not data:
            raise ApiError(f"Instrument {self.inst_id} not found")
        raw = OkxInstrument.model_validate(data[0])
        self.instrument = Instrument(
            inst_id=raw.inst_id, tick_size=raw.tick_sz, lot_size=raw.lot_sz, min_size=raw.min_sz,
        )
        logger.info(f"Instrument loaded | inst_id={self.inst_id} tick_size={raw.tick_sz} lot_size={raw.lot_sz} min_size={raw.min_sz}")
        return self.instrument

    async def get_last_price(self) -> Decimal:
        payload = await self._request("GET", "/api/v5/market/ticker", params={"instId": self.inst_id}, private=False)
        data = payload.get("data") or []
        if not data or not data[0].get("last"):
            raise ApiError("No ticker data received")
        return OkxTicker.model_validate(data[0]).last

    async def check_credentials(self) -> None:
        await self._request("GET", "/api/v5/account/balance")

    async def place_order(self, side: OrderSide, price: Decimal, size: Decimal, client_id: Optional[str] = None) -> Order:
        if self.instrument is not None:
            price = self.instrument.round_price(price, side)
            size = self.instrument.round_size(size)
            if size <= 0 or size < self.instrument.min_size:
                raise OrderRejectedError(f"Size {size} below minimum {self.instrument.min_size}")
        client_id = client_id or generate_client_id()
        body = {
            "instId": self.inst_id,
            "tdMode": "cash",
            "side": side.value,
            "ordType": "limit",
            "sz": str(size),
            "px": str(price),
            "clOrdId": client_id,
        }
        logger.info(f"Placing order | side={side.value} size={size} price={price} client_id={client_id}")
        payload = await self._request("POST", "/api/v5/trade/order", body=body)
        result = self._first_result(payload, "Order placement")
        return Order(order_id=result["ordId"], side=side, price=price, size=size, client_id=client_id)

    async def cancel_order(self, order_id: str, client_id: Optional[str] = None) -> bool:
        body = {"instId": self.inst_id, "ordId": order_id}
        if client_id:
            body["clOrdId"] = client_id
        try:
            payload = await self._request("POST", "/api/v5/trade/cancel-order", body=body)
            self._first_result(payload, "Cancel")
        except GatewayError as e:
            logger.warning(f"Cancel failed | order_id={order_id} error={e}")
            return False
        logger.info(f"Order cancelled | order_id={order_id}")
        return True

    async def _paginate(self, path: str, params: Dict[str, str], cursor_field: str, max_pages: int = 10) -> List[Dict[str, Any]]:
        """Follow OKX ``after`` cursors (results are newest first)."""
        rows: List[Dict[str, Any]] = []
        query = dict(params, limit=str(PAGE_LIMIT))
        for _ in range(max_pages):
            payload = await self._request("GET", path, params=query)
            page = payload.get("data") or []
            rows.extend(page)
            if len(page) < PAGE_LIMIT:
                break
            query["after"] = page[-1][cursor_field]
        return rows

    async def list_open_orders(self) -> List[Order]:
        rows = await self._paginate(
            "/api/v5/trade/orders-pending", {"instType": "SPOT", "instId": self.inst_id}, "ordId",
        )
        return [OkxPendingOrder.model_validate(r).to_order() for r in rows if r.get("instId") == self.inst_id]

    async def list_fills_since(self, since_ms: int) -> List[Fill]:
        rows = await self._paginate(
            "/api/v5/trade/fills",
            {"instType": "SPOT", "instId": self.inst_id, "begin": str(since_ms)},
            "billId",
        )
        fills = [OkxFill.model_validate(r).to_fill() for r in rows if r.get("instId") == self.inst_id]
        return sorted(fills, key=lambda f: f.ts_ms)
