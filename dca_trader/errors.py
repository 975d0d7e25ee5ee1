"""Exception hierarchy shared by the gateway, feeds and runner."""


class TradingError(Exception):
    pass


class GatewayError(TradingError):
    """A REST call failed after exhausting its retries."""
    pass


class RateLimitError(GatewayError):
    """Raised when rate limit is hit and backoff is exhausted."""
    pass


class ApiError(GatewayError):
    """The venue answered with a non-transient error code; never retried."""

    def __init__(self, message: str, code: str = ""):
        super().__init__(message)
        self.code = code


class OrderRejectedError(ApiError):
    """The venue accepted the request but rejected the order itself.

    Retrying with unchanged parameters repeats the rejection.
    """
    pass


class FeedError(TradingError):
    """WebSocket handshake or protocol failure."""
    pass


class StartupError(TradingError):
    """Fatal condition detected before any order is placed."""
    pass
