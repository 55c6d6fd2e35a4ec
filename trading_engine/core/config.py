"""
Load configuration from config.yaml and .env. Broker and Telegram secrets only from env.
"""

from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv


def _env_path(project_root: Optional[Path] = None) -> Path:
    root = project_root or Path(__file__).resolve().parents[2]
    return root / ".env"


def load_dotenv_if_exists(project_root: Optional[Path] = None) -> None:
    """Load .env from project root if present."""
    path = _env_path(project_root)
    if path.exists():
        load_dotenv(path)


def load_config(config_path: Optional[Path] = None, project_root: Optional[Path] = None) -> "Config":
    """Load config.yaml and overlay with env. Returns Config."""
    load_dotenv_if_exists(project_root)
    root = project_root or Path(__file__).resolve().parents[2]
    path = config_path or root / "config.yaml"
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    def env(key: str, default: str = "") -> str:
        return os.getenv(key, default).strip()

    def env_bool(key: str, default: bool = False) -> bool:
        return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

    def env_int(key: str, default: int = 0) -> int:
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def env_float(key: str, default: float = 0.0) -> float:
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    market = data.get("data", {})
    backtest = data.get("backtest", {})
    batch = data.get("batch", {})
    live = data.get("live", {})
    broker = data.get("broker", {})
    telegram = data.get("telegram", {})
    logging_cfg = data.get("logging", {})
    api = data.get("api", {})
    database = data.get("database", {})

    paper = env_bool("ALPACA_PAPER", broker.get("paper", True))
    default_broker_url = "https://paper-api.alpaca.markets" if paper else "https://api.alpaca.markets"

    return Config(
        # Data
        data_base_url=env("DATA_BASE_URL", market.get("base_url", "https://query1.finance.yahoo.com")),
        data_timeout=env_float("DATA_TIMEOUT", market.get("timeout", 15.0)),
        cache_dir=market.get("cache_dir") or None,
        # Backtest
        trade_amount=env_float("TRADE_AMOUNT", backtest.get("trade_amount", 1000.0)),
        min_notional=env_float("MIN_NOTIONAL", backtest.get("min_notional", 1.0)),
        min_risk_reward=env_float("MIN_RISK_REWARD", backtest.get("min_risk_reward", 0.0)),
        entry_on_next_open=env_bool("ENTRY_ON_NEXT_OPEN", backtest.get("entry_on_next_open", False)),
        include_end_trades=env_bool("INCLUDE_END_TRADES", backtest.get("include_end_trades", True)),
        count_open_as_wins=env_bool("COUNT_OPEN_AS_WINS", backtest.get("count_open_as_wins", False)),
        # Batch
        batch_max_workers=env_int("BATCH_MAX_WORKERS", batch.get("max_workers", 50)),
        prefetch_max_workers=env_int("PREFETCH_MAX_WORKERS", batch.get("prefetch_max_workers", 20)),
        watchlist=list(batch.get("watchlist", [])),
        # Live
        default_user_id=env_int("DEFAULT_USER_ID", live.get("default_user_id", 1)),
        market_hours_only=env_bool("MARKET_HOURS_ONLY", live.get("market_hours_only", False)),
        reconcile_tolerance_pct=env_float("RECONCILE_TOLERANCE_PCT", live.get("reconcile_tolerance_pct", 0.5)),
        # Broker (env only for keys)
        alpaca_api_key=env("ALPACA_API_KEY"),
        alpaca_api_secret=env("ALPACA_API_SECRET"),
        alpaca_base_url=env("ALPACA_BASE_URL", broker.get("base_url", default_broker_url)),
        alpaca_paper=paper,
        # Telegram
        telegram_bot_token=env("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=env("TELEGRAM_CHAT_ID", str(telegram.get("chat_id", ""))),
        notifier_poll_seconds=float(telegram.get("poll_seconds", 5.0)),
        # Logging
        log_level=env("LOG_LEVEL", logging_cfg.get("level", "INFO")),
        log_dir=Path(logging_cfg.get("log_dir", "logs")),
        log_file=logging_cfg.get("log_file", "trading_engine.log"),
        # API
        api_host=env("API_HOST", api.get("host", "127.0.0.1")),
        api_port=env_int("API_PORT", api.get("port", 8000)),
        # Database
        database_url=env("DATABASE_URL", database.get("url", "sqlite:///trading_engine.db")),
    )


class Config:
    """Unified configuration. Immutable after load."""

    __slots__ = (
        "data_base_url", "data_timeout", "cache_dir",
        "trade_amount", "min_notional", "min_risk_reward",
        "entry_on_next_open", "include_end_trades", "count_open_as_wins",
        "batch_max_workers", "prefetch_max_workers", "watchlist",
        "default_user_id", "market_hours_only", "reconcile_tolerance_pct",
        "alpaca_api_key", "alpaca_api_secret", "alpaca_base_url", "alpaca_paper",
        "telegram_bot_token", "telegram_chat_id", "notifier_poll_seconds",
        "log_level", "log_dir", "log_file",
        "api_host", "api_port",
        "database_url",
    )

    def __init__(
        self,
        data_base_url: str = "https://query1.finance.yahoo.com",
        data_timeout: float = 15.0,
        cache_dir: Optional[str] = None,
        trade_amount: float = 1000.0,
        min_notional: float = 1.0,
        min_risk_reward: float = 0.0,
        entry_on_next_open: bool = False,
        include_end_trades: bool = True,
        count_open_as_wins: bool = False,
        batch_max_workers: int = 50,
        prefetch_max_workers: int = 20,
        watchlist: Optional[list] = None,
        default_user_id: int = 1,
        market_hours_only: bool = False,
        reconcile_tolerance_pct: float = 0.5,
        alpaca_api_key: str = "",
        alpaca_api_secret: str = "",
        alpaca_base_url: str = "https://paper-api.alpaca.markets",
        alpaca_paper: bool = True,
        telegram_bot_token: str = "",
        telegram_chat_id: str = "",
        notifier_poll_seconds: float = 5.0,
        log_level: str = "INFO",
        log_dir: Path = None,
        log_file: str = "trading_engine.log",
        api_host: str = "127.0.0.1",
        api_port: int = 8000,
        database_url: str = "sqlite:///trading_engine.db",
    ):
        self.data_base_url = data_base_url
        self.data_timeout = data_timeout
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.trade_amount = trade_amount
        self.min_notional = min_notional
        self.min_risk_reward = min_risk_reward
        self.entry_on_next_open = entry_on_next_open
        self.include_end_trades = include_end_trades
        self.count_open_as_wins = count_open_as_wins
        self.batch_max_workers = batch_max_workers
        self.prefetch_max_workers = prefetch_max_workers
        self.watchlist = watchlist or []
        self.default_user_id = default_user_id
        self.market_hours_only = market_hours_only
        self.reconcile_tolerance_pct = reconcile_tolerance_pct
        self.alpaca_api_key = alpaca_api_key
        self.alpaca_api_secret = alpaca_api_secret
        self.alpaca_base_url = alpaca_base_url
        self.alpaca_paper = alpaca_paper
        self.telegram_bot_token = telegram_bot_token
        self.telegram_chat_id = telegram_chat_id
        self.notifier_poll_seconds = notifier_poll_seconds
        self.log_level = log_level
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_file = log_file
        self.api_host = api_host
        self.api_port = api_port
        self.database_url = database_url

    @property
    def broker_enabled(self) -> bool:
        return bool(self.alpaca_api_key and self.alpaca_api_secret)
