import json
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .auth import rest_headers
from .config import BotConfig
from .errors import ApiError, GatewayError, OrderRejectedError, RateLimitError
from .events import Fill, OkxFill, OkxPendingOrder, OkxTicker
from .logging_setup import logger
from .position import Order
from .rate_limit_policy import RateLimitManager
from .secrets import OkxCredentials, load_credentials


class OkxClient:
    """Blocking OKX REST client for the operator scripts.

    Features:
    - Request signing (OK-ACCESS-* headers), sandbox header when asked.
    - Automatic retry with urllib3.Retry for 429 and 5xx responses.
    - Local per-endpoint rate limiting via RateLimitManager.wait_if_needed().

    The trading loop itself uses the async gateway; this client exists so
    inspection and cleanup scripts need no event loop.
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
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.passphrase = passphrase
        self.inst_id = inst_id
        self.base_url = base_url.rstrip("/")
        self.sandbox = sandbox
        self.timeout = timeout
        self.rate_limiter = rate_limiter or RateLimitManager()

        self.session = requests.Session()
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(429, 500, 502, 503, 504), allowed_methods=frozenset(["GET", "POST"]))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_credentials(cls, credentials: OkxCredentials, **kwargs) -> "OkxClient":
        return cls(
            api_key=credentials.api_key,
            secret=credentials.api_secret,
            passphrase=credentials.passphrase,
            **kwargs
        )

    def _request(self, method: str, path: str, body: Optional[dict] = None, params: Optional[dict] = None) -> Dict[str, Any]:
        request_path = path if path.startswith("/") else f"/{path}"
        if params:
            request_path = f"{request_path}?{urlencode(params)}"
        body_str = json.dumps(body) if body is not None else ""
        headers = rest_headers(self.api_key, self.secret, self.passphrase, method, request_path, body_str, simulated=self.sandbox)

        if not self.rate_limiter.wait_if_needed(path):
            raise RateLimitError(f"Local rate limit wait exceeded for {path}")

        url = f"{self.base_url}{request_path}"
        try:
            resp = self.session.request(method, url, headers=headers, data=body_str or None, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"Request failed: {e}")

        try:
            payload = resp.json()
        except ValueError:
            raise GatewayError(f"{resp.status_code}: non-JSON response {resp.text[:200]}")

        code = str(payload.get("code", "0"))
        data = payload.get("data") or []
        if code != "0" and not (data and isinstance(data[0], dict) and "sCode" in data[0]):
            raise ApiError(f"API error: {payload.get('msg')} (code {code})", code=code)
        return payload

    def get_last_price(self) -> Decimal:
        payload = self._request("GET", "/api/v5/market/ticker", params={"instId": self.inst_id})
        data = payload.get("data") or []
        if not data:
            raise ApiError("No ticker data received")
        return OkxTicker.model_validate(data[0]).last

    def get_balances(self) -> Dict[str, Decimal]:
        """Available balance per currency with a non-zero amount."""
        payload = self._request("GET", "/api/v5/account/balance")
        balances: Dict[str, Decimal] = {}
        for account in payload.get("data") or []:
            for detail in account.get("details") or []:
                avail = Decimal(detail.get("availBal") or "0")
                if avail:
                    balances[detail["ccy"]] = avail
        return balances

    def list_open_orders(self) -> List[Order]:
        payload = self._request("GET", "/api/v5/trade/orders-pending", params={"instType": "SPOT", "instId": self.inst_id})
        return [OkxPendingOrder.model_validate(r).to_order() for r in payload.get("data") or []]

    def list_fills(self, since_ms: Optional[int] = None, limit: int = 100) -> List[Fill]:
        params = {"instType": "SPOT", "instId": self.inst_id, "limit": str(limit)}
        if since_ms is not None:
            params["begin"] = str(since_ms)
        payload = self._request("GET", "/api/v5/trade/fills", params=params)
        fills = [OkxFill.model_validate(r).to_fill() for r in payload.get("data") or []]
        return sorted(fills, key=lambda f: f.ts_ms)

    def cancel_order(self, order_id: str) -> None:
        payload = self._request("POST", "/api/v5/trade/cancel-order", body={"instId": self.inst_id, "ordId": order_id})
        result = (payload.get("data") or [{}])[0]
        if str(result.get("sCode", "0")) != "0":
            raise OrderRejectedError(f"Cancel rejected: {result.get('sMsg')} (code {result.get('sCode')})", code=str(result.get("sCode")))

    def cancel_all(self) -> Dict[str, List[str]]:
        """Cancel every open order for the pair; returns cancelled and failed ids."""
        cancelled: List[str] = []
        failed: List[str] = []
        for order in self.list_open_orders():
            try:
                self.cancel_order(order.order_id)
            except GatewayError as e:
                logger.warning(f"Cancel failed | order_id={order.order_id} error={e}")
                failed.append(order.order_id)
                continue
            cancelled.append(order.order_id)
        return {"cancelled": cancelled, "failed": failed}


def build_client(config_path: Optional[str] = None, sandbox: bool = False) -> OkxClient:
    """OkxClient for the pair in the YAML config (or the OKX_* environment).

    Raises:
        ValueError: If credentials are missing or the config is invalid
    """
    config = BotConfig.from_yaml(config_path) if config_path else BotConfig.from_env()
    return OkxClient.from_credentials(
        load_credentials(),
        inst_id=config.exchange.inst_id,
        base_url=config.exchange.base_url,
        sandbox=sandbox or config.exchange.sandbox,
        timeout=config.exchange.timeout,
        max_retries=config.exchange.max_retries,
    )
