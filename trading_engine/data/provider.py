"""
Bar data providers. YahooProvider reads the public chart API over requests.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Optional

import pandas as pd
import requests

from trading_engine.core.errors import DataUnavailableError
from trading_engine.data.bars import aggregate_bars, empty_frame, normalize_bars
from trading_engine.utils.retry import retry_on_rate_limit
from trading_engine.utils.timeframes import normalize_interval

logger = logging.getLogger("trading_engine.data.provider")

# interval -> (upstream interval, aggregation factor, range)
_YAHOO_INTERVALS = {
    "5m": ("5m", 1, "60d"),
    "15m": ("15m", 1, "60d"),
    "1h": ("60m", 1, "730d"),
    "2h": ("60m", 2, "730d"),
    "4h": ("60m", 4, "730d"),
    "1d": ("1d", 1, "10y"),
    "1wk": ("1wk", 1, "max"),
}


class DataProvider(ABC):
    """Source of OHLCV bars for (symbol, interval)."""

    @abstractmethod
    def fetch(self, symbol: str, interval: str) -> pd.DataFrame:
        """Return normalized bars or raise DataUnavailableError."""
        pass


class YahooProvider(DataProvider):
    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", "Mozilla/5.0 (trading-engine)")

    def fetch(self, symbol: str, interval: str) -> pd.DataFrame:
        key = normalize_interval(interval)
        if key not in _YAHOO_INTERVALS:
            raise DataUnavailableError(symbol, interval, f"unsupported interval {interval}")
        upstream, factor, rng = _YAHOO_INTERVALS[key]
        try:
            payload = self._get_chart(symbol, upstream, rng)
        except requests.RequestException as e:
            raise DataUnavailableError(symbol, interval, f"fetch failed: {type(e).__name__}") from e
        df = parse_chart(payload)
        if df.empty:
            raise DataUnavailableError(symbol, interval)
        if factor > 1:
            df = aggregate_bars(df, factor)
        logger.debug("Fetched %d bars for %s %s", len(df), symbol, key)
        return df

    @retry_on_rate_limit(max_retries=3, base_delay=1.0)
    def _get_chart(self, symbol: str, interval: str, rng: str) -> dict:
        r = self._session.get(
            f"{self.base_url}/v8/finance/chart/{symbol}",
            params={"interval": interval, "range": rng, "includePrePost": "false"},
            timeout=self.timeout,
        )
        if r.status_code == 404:
            return {}
        r.raise_for_status()
        return r.json()


def parse_chart(payload: dict) -> pd.DataFrame:
    """Chart API JSON -> normalized frame (empty on error or missing data)."""
    chart = (payload or {}).get("chart") or {}
    if chart.get("error") or not chart.get("result"):
        return empty_frame()
    result = chart["result"][0]
    timestamps = result.get("timestamp") or []
    quotes = (result.get("indicators") or {}).get("quote") or [{}]
    quote = quotes[0]
    if not timestamps:
        return empty_frame()
    df = pd.DataFrame({
        "time": pd.to_datetime(timestamps, unit="s", utc=True),
        "open": quote.get("open"),
        "high": quote.get("high"),
        "low": quote.get("low"),
        "close": quote.get("close"),
        "volume": quote.get("volume"),
    })
    return normalize_bars(df)
