from decimal import Decimal

import pytest

from dca_trader.config import (
    LIVE_WS_PRIVATE_URL,
    SANDBOX_WS_PUBLIC_URL,
    BotConfig,
)


def test_defaults_are_valid():
    config = BotConfig.default()
    config.validate()
    assert config.exchange.inst_id == "ETH-USDT"
    assert config.strategy.profit_pct == Decimal("0.002")
    assert config.exchange.private_ws_url() == LIVE_WS_PRIVATE_URL


def test_from_yaml_with_env_interpolation(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    path = tmp_path / "config.yaml"
    path.write_text(
        "exchange:\n"
        "  inst_id: BTC-USDT\n"
        "  sandbox: true\n"
        "strategy:\n"
        "  trade_size: 0.001\n"
        "  profit_pct: 0.005\n"
        "persistence:\n"
        "  db_path: \"${STATE_DIR}/state.db\"\n"
        "  startup_mode: resume\n"
    )

    config = BotConfig.from_yaml(str(path))

    assert config.exchange.inst_id == "BTC-USDT"
    assert config.exchange.public_ws_url() == SANDBOX_WS_PUBLIC_URL
    assert config.strategy.trade_size == Decimal("0.001")
    assert config.strategy.profit_pct == Decimal("0.005")
    assert config.strategy.dca_pct == Decimal("0.003")
    assert config.persistence.db_path == f"{tmp_path / 'state'}/state.db"
    assert config.persistence.startup_mode == "resume"


def test_from_yaml_missing_file():
    with pytest.raises(FileNotFoundError):
        BotConfig.from_yaml("/nonexistent/config.yaml")


@pytest.mark.parametrize(
    "section, body, message",
    [
        ("strategy", "  trade_size: 0\n", "trade_size"),
        ("strategy", "  profit_pct: -0.1\n", "profit_pct"),
        ("strategy", "  dca_pct: 1.5\n", "dca_pct"),
        ("persistence", "  startup_mode: maybe\n", "startup_mode"),
    ],
)
def test_from_yaml_rejects_invalid_settings(tmp_path, section, body, message):
    path = tmp_path / "config.yaml"
    path.write_text(f"{section}:\n{body}")

    with pytest.raises(ValueError, match=message):
        BotConfig.from_yaml(str(path))


def test_from_env_converts_percentages(monkeypatch):
    monkeypatch.setenv("SYMBOL", "SOL-USDT")
    monkeypatch.setenv("BASE_CURRENCY_TRADE_AMOUNT", "0.5")
    monkeypatch.setenv("PROFIT_PERCENTAGE_PER_TRADE", "0.2")
    monkeypatch.setenv("DCA_BUY_PERCENTAGE_BELOW", "0.3")
    monkeypatch.setenv("IMMEDIATE_BUY_WAIT_MS", "250")
    monkeypatch.setenv("OKX_SANDBOX", "true")
    monkeypatch.delenv("STARTUP_MODE", raising=False)

    config = BotConfig.from_env()

    assert config.exchange.inst_id == "SOL-USDT"
    assert config.exchange.sandbox
    assert config.strategy.trade_size == Decimal("0.5")
    assert config.strategy.profit_pct == Decimal("0.002")
    assert config.strategy.dca_pct == Decimal("0.003")
    assert config.strategy.immediate_buy_wait == 0.25
    assert config.persistence.startup_mode == "fresh"


def test_to_yaml_round_trip(tmp_path):
    config = BotConfig.default()
    config.exchange.inst_id = "BTC-USDT"
    config.strategy.trade_size = Decimal("0.002")
    config.connection.ping_interval = 10.0
    out = tmp_path / "out" / "config.yaml"

    config.to_yaml(str(out))
    loaded = BotConfig.from_yaml(str(out))

    assert loaded == config
