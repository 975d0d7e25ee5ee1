"""
OKX Spot DCA Trading Bot.

An unattended single-pair trading loop for OKX Spot featuring:
- Aggressive near-market buying until a position is opened
- A profit-taking sell and an averaging-down (DCA) buy after every buy fill
- Automatic re-entry once every sell has filled
- Reconciliation against the exchange after WebSocket outages
- Atomic persistence with SQLite, optional encryption via sqlcipher
- Rate-limit policy enforcement per endpoint
- Structured logging via loguru
- Configuration-driven (YAML or OKX_* environment variables)

Core Modules:
    position: Position registry (sell slots, DCA slot, aggressive slot)
    events: Wire validation and domain events
    controller: Cycle state machine
    reconciliation: Post-outage reconciliation against the exchange
    gateway: Async OKX REST gateway
    okx_client: Blocking OKX REST client for scripts
    ws_client: Market and account WebSocket feeds
    health: Feed liveness monitor
    persistence_sqlite: Registry snapshot and fill ledger
    bot: Runner wiring everything together

Example:
    >>> from dca_trader.bot import TradingBot
    >>> from dca_trader.config import BotConfig
    >>>
    >>> config = BotConfig.from_yaml("config.yaml")
    >>> bot = TradingBot(config)
    >>> asyncio.run(bot.run())
"""

__version__ = "0.1.0"
__all__ = [
    "auth",
    "bot",
    "config",
    "controller",
    "events",
    "fill_ledger",
    "gateway",
    "health",
    "okx_client",
    "persistence_sqlite",
    "pnl",
    "position",
    "rate_limit_policy",
    "reconciliation",
    "secrets",
    "timers",
    "ws_client",
]
