"""Rate-limit policy: enforce request quotas per endpoint with sliding window."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    request_times: list = field(default_factory=list)

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        now = time.time()
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(time.time())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - time.time())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint."""

    # OKX spot limits are expressed per 2 seconds
    DEFAULT_QUOTAS = {
        "/api/v5/trade/order": RateLimitQuota(requests_per_window=60, window_seconds=2),
        "/api/v5/trade/cancel-order": RateLimitQuota(requests_per_window=60, window_seconds=2),
        "/api/v5/trade/orders-pending": RateLimitQuota(requests_per_window=60, window_seconds=2),
        "/api/v5/trade/fills": RateLimitQuota(requests_per_window=60, window_seconds=2),
        "default": RateLimitQuota(requests_per_window=20, window_seconds=2),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.states: Dict[str, RateLimitState] = {}

    @classmethod
    def from_config(cls, orders_per_window: int, default_per_window: int, window_seconds: float) -> "RateLimitManager":
        order_quota = RateLimitQuota(requests_per_window=orders_per_window, window_seconds=window_seconds)
        return cls(quotas={
            "/api/v5/trade/order": order_quota,
            "/api/v5/trade/cancel-order": order_quota,
            "default": RateLimitQuota(requests_per_window=default_per_window, window_seconds=window_seconds),
        })

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas.get("default"))
            self.states[endpoint] = RateLimitState(quota=quota)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    def wait_if_needed(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Block until a request is allowed; False if max_wait would be exceeded.

        Records the request when allowed.
        """
        start = time.time()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            if wait_time > 0:
                elapsed = time.time() - start
                if elapsed + wait_time > max_wait:
                    return False
                time.sleep(min(wait_time, max_wait - elapsed))

        self.record_request(endpoint)
        return True

    async def acquire(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Async variant of wait_if_needed that never blocks the event loop."""
        start = time.time()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            elapsed = time.time() - start
            if elapsed + wait_time > max_wait:
                return False
            await asyncio.sleep(min(wait_time, max_wait - elapsed))

        self.record_request(endpoint)
        return True
