"""Configuration loader for the bot.

Supports YAML format with environment variable interpolation, and a pure
environment-variable mode using the OKX_* variables.
"""
import os
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

LIVE_REST_URL = "https://www.okx.com"
LIVE_WS_PUBLIC_URL = "wss://ws.okx.com:8443/ws/v5/public"
LIVE_WS_PRIVATE_URL = "wss://ws.okx.com:8443/ws/v5/private"
SANDBOX_WS_PUBLIC_URL = "wss://wspap.okx.com:8443/ws/v5/public"
SANDBOX_WS_PRIVATE_URL = "wss://wspap.okx.com:8443/ws/v5/private"


@dataclass
class ExchangeConfig:
    """OKX exchange settings."""
    inst_id: str = "ETH-USDT"
    sandbox: bool = False
    base_url: str = LIVE_REST_URL
    ws_public_url: Optional[str] = None
    ws_private_url: Optional[str] = None
    timeout: float = 15.0
    max_retries: int = 3
    retry_delay: float = 1.0

    def public_ws_url(self) -> str:
        if self.ws_public_url:
            return self.ws_public_url
        return SANDBOX_WS_PUBLIC_URL if self.sandbox else LIVE_WS_PUBLIC_URL

    def private_ws_url(self) -> str:
        if self.ws_private_url:
            return self.ws_private_url
        return SANDBOX_WS_PRIVATE_URL if self.sandbox else LIVE_WS_PRIVATE_URL


@dataclass
class StrategyConfig:
    """Cycle parameters. Margins are fractions, not percent."""
    trade_size: Decimal = Decimal('0.0001')  # base currency per aggressive buy
    profit_pct: Decimal = Decimal('0.002')  # sell 0.2% above each buy fill
    dca_pct: Decimal = Decimal('0.003')  # averaging-down buy 0.3% below
    immediate_buy_wait: float = 0.1
    aggressive_requote_delay: float = 0.05
    aggressive_retry_delay: float = 1.0


@dataclass
class ConnectionConfig:
    """WebSocket health and reconnect settings."""
    ping_interval: float = 15.0
    reconnect_delay: float = 5.0
    private_reconnect_delay: float = 1.0
    shutdown_poll_interval: float = 0.5
    shutdown_wait_polls: int = 10


@dataclass
class RateLimitConfig:
    """Rate-limit policy settings (OKX limits are per 2 seconds)."""
    orders_per_window: int = 60
    default_per_window: int = 20
    window_seconds: float = 2.0


@dataclass
class PersistenceConfig:
    """Database, startup and logging settings."""
    db_path: str = "state.db"
    encryption_password: Optional[str] = None
    startup_mode: str = "fresh"  # "fresh" or "resume"
    log_file: str = "dca_trader.log"
    log_level: str = "INFO"


_DECIMAL_FIELDS = ("trade_size", "profit_pct", "dca_pct")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


@dataclass
class BotConfig:
    """Complete bot configuration."""
    exchange: ExchangeConfig
    strategy: StrategyConfig
    connection: ConnectionConfig
    rate_limit: RateLimitConfig
    persistence: PersistenceConfig

    @classmethod
    def default(cls) -> "BotConfig":
        return cls(
            exchange=ExchangeConfig(),
            strategy=StrategyConfig(),
            connection=ConnectionConfig(),
            rate_limit=RateLimitConfig(),
            persistence=PersistenceConfig(),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "BotConfig":
        """Load configuration from YAML file with env var interpolation.

        Example YAML:
            exchange:
              inst_id: ETH-USDT
              sandbox: true
            strategy:
              trade_size: 0.0001
              profit_pct: 0.002
              dca_pct: 0.003
            persistence:
              db_path: "${STATE_DIR}/state.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        strategy = StrategyConfig(**{
            k: Decimal(str(v)) if k in _DECIMAL_FIELDS else v
            for k, v in data.get("strategy", {}).items()
        })
        config = cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            strategy=strategy,
            connection=ConnectionConfig(**data.get("connection", {})),
            rate_limit=RateLimitConfig(**data.get("rate_limit", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
        )
        config.validate()
        return config

    @classmethod
    def from_env(cls) -> "BotConfig":
        """Build configuration from the OKX_* style environment variables.

        PROFIT_PERCENTAGE_PER_TRADE and DCA_BUY_PERCENTAGE_BELOW are given in
        percent (0.2 means 0.2%) and converted to fractions here.
        """
        exchange = ExchangeConfig(
            inst_id=os.getenv("SYMBOL", "ETH-USDT"),
            sandbox=os.getenv("OKX_SANDBOX", "false").lower() == "true",
            timeout=_env_int("HTTP_TIMEOUT_MS", 15000) / 1000,
            max_retries=_env_int("MAX_API_RETRIES", 3),
            retry_delay=_env_int("API_RETRY_DELAY_MS", 1000) / 1000,
        )
        strategy = StrategyConfig(
            trade_size=Decimal(os.getenv("BASE_CURRENCY_TRADE_AMOUNT") or "0.0001"),
            profit_pct=Decimal(os.getenv("PROFIT_PERCENTAGE_PER_TRADE") or "0.2") / 100,
            dca_pct=Decimal(os.getenv("DCA_BUY_PERCENTAGE_BELOW") or "0.3") / 100,
            immediate_buy_wait=_env_int("IMMEDIATE_BUY_WAIT_MS", 100) / 1000,
        )
        connection = ConnectionConfig(
            ping_interval=_env_int("WS_PING_INTERVAL_MS", 15000) / 1000,
        )
        persistence = PersistenceConfig(
            db_path=os.getenv("STATE_DB_PATH", "state.db"),
            startup_mode=os.getenv("STARTUP_MODE", "fresh"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
        config = cls(
            exchange=exchange,
            strategy=strategy,
            connection=connection,
            rate_limit=RateLimitConfig(),
            persistence=persistence,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings the cycle cannot run with."""
        s = self.strategy
        if s.trade_size <= 0:
            raise ValueError(f"trade_size must be positive, got {s.trade_size}")
        if s.profit_pct <= 0:
            raise ValueError(f"profit_pct must be positive, got {s.profit_pct}")
        if not (0 < s.dca_pct < 1):
            raise ValueError(f"dca_pct must be between 0 and 1, got {s.dca_pct}")
        if self.connection.ping_interval <= 0:
            raise ValueError("ping_interval must be positive")
        if self.persistence.startup_mode not in ("fresh", "resume"):
            raise ValueError(f"Unknown startup_mode: {self.persistence.startup_mode}")

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": {
                "inst_id": self.exchange.inst_id,
                "sandbox": self.exchange.sandbox,
                "base_url": self.exchange.base_url,
                "ws_public_url": self.exchange.ws_public_url,
                "ws_private_url": self.exchange.ws_private_url,
                "timeout": self.exchange.timeout,
                "max_retries": self.exchange.max_retries,
                "retry_delay": self.exchange.retry_delay,
            },
            "strategy": {
                "trade_size": str(self.strategy.trade_size),
                "profit_pct": str(self.strategy.profit_pct),
                "dca_pct": str(self.strategy.dca_pct),
                "immediate_buy_wait": self.strategy.immediate_buy_wait,
                "aggressive_requote_delay": self.strategy.aggressive_requote_delay,
                "aggressive_retry_delay": self.strategy.aggressive_retry_delay,
            },
            "connection": {
                "ping_interval": self.connection.ping_interval,
                "reconnect_delay": self.connection.reconnect_delay,
                "private_reconnect_delay": self.connection.private_reconnect_delay,
                "shutdown_poll_interval": self.connection.shutdown_poll_interval,
                "shutdown_wait_polls": self.connection.shutdown_wait_polls,
            },
            "rate_limit": {
                "orders_per_window": self.rate_limit.orders_per_window,
                "default_per_window": self.rate_limit.default_per_window,
                "window_seconds": self.rate_limit.window_seconds,
            },
            "persistence": {
                "db_path": self.persistence.db_path,
                "encryption_password": self.persistence.encryption_password,
                "startup_mode": self.persistence.startup_mode,
                "log_file": self.persistence.log_file,
                "log_level": self.persistence.log_level,
            },
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
