"""
OHLCV frame helpers: normalization, merge of cached + fresh bars, intraday aggregation.
All frames carry columns time, open, high, low, close, volume with tz-aware UTC times.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Iterable, List, Optional

import pandas as pd

from trading_engine.core.types import Bar
from trading_engine.utils.markets import MARKET_TZ
from trading_engine.utils.timeframes import interval_to_timedelta

COLUMNS = ["time", "open", "high", "low", "close", "volume"]
PRICE_COLUMNS = ["open", "high", "low", "close"]


def empty_frame() -> pd.DataFrame:
    df = pd.DataFrame({c: pd.Series(dtype="float64") for c in COLUMNS})
    df["time"] = pd.to_datetime(df["time"], utc=True)
    return df


def normalize_bars(df: Optional[pd.DataFrame]) -> pd.DataFrame:
    """Coerce to the canonical frame: UTC times, ascending, unique, no NaN prices."""
    if df is None or df.empty:
        return empty_frame()
    missing = [c for c in COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"bars missing columns: {missing}")
    out = df[COLUMNS].copy()
    out["time"] = pd.to_datetime(out["time"], utc=True)
    out[PRICE_COLUMNS + ["volume"]] = out[PRICE_COLUMNS + ["volume"]].astype(float)
    out["volume"] = out["volume"].fillna(0.0)
    out = out.dropna(subset=PRICE_COLUMNS)
    out = out.drop_duplicates(subset="time", keep="last").sort_values("time")
    return out.reset_index(drop=True)


def bars_to_frame(bars: Iterable[Bar]) -> pd.DataFrame:
    rows = [
        {"time": b.time, "open": b.open, "high": b.high, "low": b.low, "close": b.close, "volume": b.volume}
        for b in bars
    ]
    if not rows:
        return empty_frame()
    return normalize_bars(pd.DataFrame(rows))


def frame_to_bars(df: pd.DataFrame) -> List[Bar]:
    return [
        Bar(
            time=row.time.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def merge_bars(cached: Optional[pd.DataFrame], fresh: Optional[pd.DataFrame]) -> pd.DataFrame:
    """
    Fresh bars win from their first timestamp onward: cached bars at or after it are
    dropped (the last cached bar may have been a forming candle). Result is ascending, unique.
    """
    cached = normalize_bars(cached)
    fresh = normalize_bars(fresh)
    if fresh.empty:
        return cached
    if cached.empty:
        return fresh
    cutoff = fresh["time"].iloc[0]
    head = cached[cached["time"] < cutoff]
    return normalize_bars(pd.concat([head, fresh], ignore_index=True))


def aggregate_bars(df: pd.DataFrame, factor: int) -> pd.DataFrame:
    """
    Combine every `factor` consecutive bars into one, never across a trading day
    (New York calendar). A trailing partial group still yields a bar.
    """
    df = normalize_bars(df)
    if factor <= 1 or df.empty:
        return df
    local_day = df["time"].dt.tz_convert(MARKET_TZ).dt.date
    slot = df.groupby(local_day).cumcount() // factor
    grouped = df.groupby([local_day, slot], sort=False)
    out = grouped.agg(
        time=("time", "first"),
        open=("open", "first"),
        high=("high", "max"),
        low=("low", "min"),
        close=("close", "last"),
        volume=("volume", "sum"),
    )
    return normalize_bars(out.reset_index(drop=True))


def drop_forming_bar(df: pd.DataFrame, interval: str, now: Optional[datetime] = None) -> pd.DataFrame:
    """Drop the last bar if its interval has not elapsed yet."""
    if df.empty:
        return df
    now = now or datetime.now(timezone.utc)
    last_open = df["time"].iloc[-1]
    if last_open + interval_to_timedelta(interval) > pd.Timestamp(now):
        return df.iloc[:-1].reset_index(drop=True)
    return df
