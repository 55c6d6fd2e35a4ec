"""Config loading: yaml values, env overlay, secrets from env only."""

from trading_engine.core.config import load_config


def test_defaults_without_files(tmp_path, monkeypatch):
    for key in ("ALPACA_API_KEY", "ALPACA_API_SECRET", "TELEGRAM_BOT_TOKEN", "TRADE_AMOUNT", "DATABASE_URL"):
        monkeypatch.delenv(key, raising=False)
    config = load_config(tmp_path / "missing.yaml", tmp_path)
    assert config.trade_amount == 1000.0
    assert config.include_end_trades is True
    assert config.count_open_as_wins is False
    assert config.broker_enabled is False
    assert config.database_url == "sqlite:///trading_engine.db"


def test_yaml_and_env_overlay(tmp_path, monkeypatch):
    for key in ("ALPACA_API_KEY", "TRADE_AMOUNT", "ENTRY_ON_NEXT_OPEN"):
        monkeypatch.delenv(key, raising=False)
    (tmp_path / "config.yaml").write_text(
        "backtest:\n  trade_amount: 500\n  entry_on_next_open: true\n"
        "batch:\n  watchlist: [AAPL, MSFT]\n"
        "broker:\n  api_key: from-yaml\n"
    )
    monkeypatch.setenv("MIN_RISK_REWARD", "1.5")
    config = load_config(tmp_path / "config.yaml", tmp_path)
    assert config.trade_amount == 500.0
    assert config.entry_on_next_open is True
    assert config.watchlist == ["AAPL", "MSFT"]
    assert config.min_risk_reward == 1.5
    # broker keys are never read from yaml
    assert config.alpaca_api_key != "from-yaml"


def test_broker_enabled_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("ALPACA_API_KEY", "k")
    monkeypatch.setenv("ALPACA_API_SECRET", "s")
    monkeypatch.setenv("ALPACA_PAPER", "true")
    monkeypatch.delenv("ALPACA_BASE_URL", raising=False)
    config = load_config(tmp_path / "missing.yaml", tmp_path)
    assert config.broker_enabled is True
    assert "paper" in config.alpaca_base_url
