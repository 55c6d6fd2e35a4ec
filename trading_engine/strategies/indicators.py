"""
Causal indicator functions shared by the strategies. Every value at index i
depends on inputs 0..i only.
"""

from __future__ import annotations
from typing import Tuple

import numpy as np
import pandas as pd
from numpy.lib.stride_tricks import sliding_window_view


def ema(series: pd.Series, span: int) -> pd.Series:
    return series.ewm(span=span, adjust=False).mean()


def sma(series: pd.Series, length: int) -> pd.Series:
    return series.rolling(length).mean()


def rsi(close: pd.Series, length: int) -> pd.Series:
    delta = close.diff()
    up = delta.clip(lower=0)
    down = (-delta).clip(lower=0)
    avg_up = up.rolling(length).mean()
    avg_down = down.rolling(length).mean()
    rs = avg_up / avg_down.replace(0, np.nan)
    out = 100 - (100 / (1 + rs))
    # no losses in window -> 100, flat window -> 50
    out = out.where(avg_down != 0, np.where(avg_up > 0, 100.0, 50.0))
    return out.where(avg_up.notna())


def true_range(df: pd.DataFrame) -> pd.Series:
    high_low = df["high"] - df["low"]
    high_close = (df["high"] - df["close"].shift()).abs()
    low_close = (df["low"] - df["close"].shift()).abs()
    return pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)


def atr(df: pd.DataFrame, length: int) -> pd.Series:
    return true_range(df).rolling(length).mean()


def rolling_std(series: pd.Series, length: int) -> pd.Series:
    """Population standard deviation, as Bollinger bands use."""
    return series.rolling(length).std(ddof=0)


def regression_channel(close: pd.Series, length: int, degree: int) -> Tuple[pd.Series, pd.Series]:
    """
    Rolling least-squares polynomial fit over the last `length` closes.
    Returns (fitted value at the newest bar, residual std of the window).
    """
    values = close.to_numpy(dtype=float)
    n = len(values)
    center = np.full(n, np.nan)
    spread = np.full(n, np.nan)
    if n < length:
        return pd.Series(center, index=close.index), pd.Series(spread, index=close.index)
    x = np.linspace(-1.0, 1.0, length)
    vander = np.vander(x, degree + 1)
    hat = vander @ np.linalg.pinv(vander)
    windows = sliding_window_view(values, length)
    fitted = windows @ hat.T
    residuals = windows - fitted
    center[length - 1:] = fitted[:, -1]
    spread[length - 1:] = np.sqrt((residuals ** 2).mean(axis=1))
    return pd.Series(center, index=close.index), pd.Series(spread, index=close.index)


def nadaraya_watson(close: pd.Series, bandwidth: float, lookback: int) -> pd.Series:
    """
    Causal Gaussian-kernel estimate: weights exp(-j^2 / (2 h^2)) on close[i - j],
    j = 0..lookback-1, normalized over the bars available.
    """
    values = close.to_numpy(dtype=float)
    n = len(values)
    if n == 0:
        return pd.Series(values, index=close.index)
    j = np.arange(lookback, dtype=float)
    weights = np.exp(-(j ** 2) / (2.0 * bandwidth ** 2))
    num = np.convolve(values, weights)[:n]
    den = np.convolve(np.ones(n), weights)[:n]
    return pd.Series(num / den, index=close.index)


def hann_smooth(series: pd.Series, length: int) -> pd.Series:
    """FIR filter with Hann window coefficients 1 - cos(2 pi k / (length + 1)), k = 1..length."""
    k = np.arange(1, length + 1, dtype=float)
    weights = 1.0 - np.cos(2.0 * np.pi * k / (length + 1))
    weights = weights / weights.sum()
    return series.rolling(length).apply(lambda w: float(np.dot(w, weights[::-1])), raw=True)


def directional_momentum(df: pd.DataFrame, length: int) -> pd.Series:
    """Hann-smoothed (+DM - -DM) normalized by Hann-smoothed true range, x100."""
    up = df["high"].diff()
    down = -df["low"].diff()
    plus_dm = up.where((up > down) & (up > 0), 0.0)
    minus_dm = down.where((down > up) & (down > 0), 0.0)
    tr = true_range(df)
    num = hann_smooth((plus_dm - minus_dm).fillna(0.0), length)
    den = hann_smooth(tr.fillna(df["high"] - df["low"]), length)
    return 100.0 * num / den.replace(0, np.nan)


def parabolic_sar(
    high: pd.Series, low: pd.Series, start: float, increment: float, maximum: float
) -> Tuple[pd.Series, pd.Series]:
    """Wilder's parabolic SAR. Returns (sar, trend) with trend +1 (up) / -1 (down)."""
    h = high.to_numpy(dtype=float)
    lo = low.to_numpy(dtype=float)
    n = len(h)
    sar = np.full(n, np.nan)
    trend = np.zeros(n)
    if n < 2:
        return pd.Series(sar, index=high.index), pd.Series(trend, index=high.index)
    up = h[1] >= h[0]
    af = start
    ep = h[1] if up else lo[1]
    sar[1] = lo[0] if up else h[0]
    trend[1] = 1 if up else -1
    for i in range(2, n):
        prev = sar[i - 1]
        cur = prev + af * (ep - prev)
        if up:
            cur = min(cur, lo[i - 1], lo[i - 2])
            if lo[i] < cur:
                up, cur, ep, af = False, ep, lo[i], start
            elif h[i] > ep:
                ep = h[i]
                af = min(af + increment, maximum)
        else:
            cur = max(cur, h[i - 1], h[i - 2])
            if h[i] > cur:
                up, cur, ep, af = True, ep, h[i], start
            elif lo[i] < ep:
                ep = lo[i]
                af = min(af + increment, maximum)
        sar[i] = cur
        trend[i] = 1 if up else -1
    return pd.Series(sar, index=high.index), pd.Series(trend, index=high.index)


def money_flow(df: pd.DataFrame, window: int, smooth: int, boost: float) -> pd.Series:
    """
    Volume-weighted flow oscillator in [-100, 100]: (up flow - down flow) / total flow,
    scaled by boost and EMA-smoothed. Zero-volume series fall back to unit volume.
    """
    typical = (df["high"] + df["low"] + df["close"]) / 3.0
    volume = df["volume"]
    if not (volume > 0).any():
        volume = pd.Series(1.0, index=df.index)
    raw = typical * volume
    change = typical.diff()
    pos = raw.where(change > 0, 0.0).rolling(window).sum()
    neg = raw.where(change < 0, 0.0).rolling(window).sum()
    total = (pos + neg).replace(0, np.nan)
    osc = ((pos - neg) / total * 100.0 * boost).clip(-100.0, 100.0)
    return ema(osc, smooth)


def prior_high(high: pd.Series, lookback: int) -> pd.Series:
    """Highest high of the `lookback` bars before the current one."""
    return high.shift(1).rolling(lookback).max()


def prior_low(low: pd.Series, lookback: int) -> pd.Series:
    return low.shift(1).rolling(lookback).min()


def crossed_below(a: pd.Series, b: pd.Series) -> pd.Series:
    return (a < b) & (a.shift(1) >= b.shift(1))


def crossed_above(a: pd.Series, b: pd.Series) -> pd.Series:
    return (a > b) & (a.shift(1) <= b.shift(1))
