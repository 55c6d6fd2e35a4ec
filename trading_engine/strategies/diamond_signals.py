"""
Diamond signals: confluence scoring.

Long conditions (short is the mirror image):
  1. RSI touched oversold within the last 3 bars
  2. pattern break: the pattern-window low was set in the last 3 bars and close
     breaks above the prior 3-bar high
  3. volume above its pattern-window average
  4. close above the pattern-window EMA
  5. bullish candle with body >= half the range
A signal needs at least confluence_min conditions and respects the cooldown.
"""

from __future__ import annotations
from typing import List

import numpy as np
import pandas as pd

from trading_engine.core.types import Direction, Signal
from trading_engine.strategies.base import BaseStrategy, ParamSpec
from trading_engine.strategies import indicators as ind

RECENT = 3


class DiamondSignalsStrategy(BaseStrategy):
    name = "diamond_signals"
    label = "Diamond Signals"
    default_interval = "4h"
    param_specs = (
        ParamSpec("pattern_length", 20, 5, 50, 1, integer=True),
        ParamSpec("rsi_period", 14, 5, 30, 1, integer=True),
        ParamSpec("confluence_min", 3, 1, 5, 1, integer=True),
        ParamSpec("rsi_overbought", 65, 50, 90, 5),
        ParamSpec("rsi_oversold", 35, 10, 50, 5),
        ParamSpec("cooldown", 5, 1, 20, 1, integer=True),
        ParamSpec("risk_reward", 2.0, 1.0, 5.0, 0.1),
    )
    indicator_columns = ("rsi", "diamond_ema", "confluence_long", "confluence_short")
    oscillator_columns = ("rsi", "confluence_long", "confluence_short")

    @property
    def required_bars(self) -> int:
        return max(200, int(self.p("pattern_length")) * 2 + RECENT)

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        n = int(self.p("pattern_length"))
        r = ind.rsi(df["close"], int(self.p("rsi_period")))
        df["rsi"] = r
        df["diamond_ema"] = ind.ema(df["close"], n)
        df["pattern_low"] = df["low"].rolling(n).min()
        df["pattern_high"] = df["high"].rolling(n).max()
        vol_avg = ind.sma(df["volume"], n)
        rng = (df["high"] - df["low"]).replace(0, np.nan)
        body = (df["close"] - df["open"]) / rng

        recent_low = df["low"].rolling(RECENT).min()
        recent_high = df["high"].rolling(RECENT).max()
        conds_long = [
            r.rolling(RECENT).min() <= self.p("rsi_oversold"),
            (recent_low <= df["pattern_low"]) & (df["close"] > ind.prior_high(df["high"], RECENT)),
            df["volume"] > vol_avg,
            df["close"] > df["diamond_ema"],
            body >= 0.5,
        ]
        conds_short = [
            r.rolling(RECENT).max() >= self.p("rsi_overbought"),
            (recent_high >= df["pattern_high"]) & (df["close"] < ind.prior_low(df["low"], RECENT)),
            df["volume"] > vol_avg,
            df["close"] < df["diamond_ema"],
            body <= -0.5,
        ]
        df["confluence_long"] = sum(c.fillna(False).astype(int) for c in conds_long)
        df["confluence_short"] = sum(c.fillna(False).astype(int) for c in conds_short)
        return df

    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        need = int(self.p("confluence_min"))
        cooldown = int(self.p("cooldown"))
        longs = df["confluence_long"].to_numpy()
        shorts = df["confluence_short"].to_numpy()
        signals: List[Signal] = []
        last = -cooldown - 1
        for i in range(len(df)):
            if i - last <= cooldown:
                continue
            lc, sc = longs[i], shorts[i]
            sig = None
            if lc >= need and lc > sc:
                sig = self._entry(df, i, Direction.LONG, float(df["pattern_low"].iloc[i]), f"confluence {lc}/5 long")
            elif sc >= need and sc > lc:
                sig = self._entry(df, i, Direction.SHORT, float(df["pattern_high"].iloc[i]), f"confluence {sc}/5 short")
            if sig is not None:
                signals.append(sig)
                last = i
        return signals
