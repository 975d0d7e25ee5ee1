"""OKX request signing for REST calls and the private WebSocket login."""
import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Dict, Optional

WS_LOGIN_PATH = "/users/self/verify"


def sign(secret: str, timestamp: str, method: str, request_path: str, body: str = "") -> str:
    """Return base64(HMAC-SHA256(secret, timestamp + METHOD + path + body))."""
    message = timestamp + method.upper() + request_path + body
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def rest_timestamp(now: Optional[float] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2020-12-08T09:08:57.715Z."""
    dt = datetime.fromtimestamp(now if now is not None else time.time(), tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def rest_headers(
    api_key: str,
    secret: str,
    passphrase: str,
    method: str,
    request_path: str,
    body: str = "",
    *,
    simulated: bool = False,
) -> Dict[str, str]:
    timestamp = rest_timestamp()
    headers = {
        "OK-ACCESS-KEY": api_key,
        "OK-ACCESS-SIGN": sign(secret, timestamp, method, request_path, body),
        "OK-ACCESS-TIMESTAMP": timestamp,
        "OK-ACCESS-PASSPHRASE": passphrase,
        "Content-Type": "application/json",
    }
    if simulated:
        headers["x-simulated-trading"] = "1"
    return headers


def ws_login_message(api_key: str, secret: str, passphrase: str, now: Optional[float] = None) -> dict:
    """Build the ``login`` op for the private WebSocket (epoch-seconds timestamp)."""
    timestamp = str(int(now if now is not None else time.time()))
    return {
        "op": "login",
        "args": [{
            "apiKey": api_key,
            "passphrase": passphrase,
            "timestamp": timestamp,
            "sign": sign(secret, timestamp, "GET", WS_LOGIN_PATH),
        }],
    }
