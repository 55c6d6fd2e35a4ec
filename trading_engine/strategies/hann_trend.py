"""
Hann trend: directional momentum histogram (DMH) smoothed with a Hann window,
combined with a parabolic SAR. After a pullback (SAR flipped against the DMH
direction within the swing lookback) a fresh break of the swing extreme enters.
The SAR trails the stop; a DMH zero cross exits.
"""

from __future__ import annotations
from typing import List, Tuple

import numpy as np
import pandas as pd

from trading_engine.core.types import Direction, Signal, SignalKind
from trading_engine.strategies.base import BaseStrategy, ParamSpec
from trading_engine.strategies import indicators as ind


class HannTrendStrategy(BaseStrategy):
    name = "hann_trend"
    label = "Hann Trend"
    default_interval = "1h"
    param_specs = (
        ParamSpec("dmh_length", 30, 5, 80, 1, integer=True),
        ParamSpec("sar_start", 0.02, 0.005, 0.1, 0.005),
        ParamSpec("sar_increment", 0.03, 0.005, 0.1, 0.005),
        ParamSpec("sar_max", 0.3, 0.1, 0.5, 0.01),
        ParamSpec("swing_lookback", 5, 2, 20, 1, integer=True),
        ParamSpec("risk_reward", 2.0, 1.0, 5.0, 0.1),
        ParamSpec("sl_buffer", 0.3, 0.0, 3.0, 0.1),
    )
    indicator_columns = ("dmh", "sar")
    oscillator_columns = ("dmh",)

    @property
    def required_bars(self) -> int:
        return int(self.p("dmh_length")) * 2 + 10

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        lookback = int(self.p("swing_lookback"))
        df["dmh"] = ind.directional_momentum(df, int(self.p("dmh_length")))
        sar, trend = ind.parabolic_sar(
            df["high"], df["low"], self.p("sar_start"), self.p("sar_increment"), self.p("sar_max")
        )
        df["sar"] = sar
        df["sar_trend"] = trend
        df["swing_high"] = ind.prior_high(df["high"], lookback)
        df["swing_low"] = ind.prior_low(df["low"], lookback)
        # a pullback is any SAR flip against the trend inside the lookback window
        df["had_down"] = (trend < 0).astype(float).rolling(lookback).max()
        df["had_up"] = (trend > 0).astype(float).rolling(lookback).max()
        df["pull_low"] = df["low"].rolling(lookback + 1).min()
        df["pull_high"] = df["high"].rolling(lookback + 1).max()
        return df

    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        buf = self.p("sl_buffer") / 100.0
        close = df["close"]
        long_break = ind.crossed_above(close, df["swing_high"])
        short_break = ind.crossed_below(close, df["swing_low"])
        dmh_up = ind.crossed_above(df["dmh"], pd.Series(0.0, index=df.index))
        dmh_down = ind.crossed_below(df["dmh"], pd.Series(0.0, index=df.index))
        signals: List[Signal] = []
        for i in range(1, len(df)):
            bar = df.iloc[i]
            if dmh_down.iloc[i]:
                signals.append(self._signal(df, i, SignalKind.EXIT, "DMH turned negative", direction=Direction.LONG))
            elif dmh_up.iloc[i]:
                signals.append(self._signal(df, i, SignalKind.EXIT, "DMH turned positive", direction=Direction.SHORT))
            sig = None
            if bar["dmh"] > 0 and bar["sar_trend"] > 0 and bar["had_down"] == 1 and long_break.iloc[i]:
                sig = self._entry(df, i, Direction.LONG, bar["pull_low"] * (1 - buf), "swing break after pullback")
            elif bar["dmh"] < 0 and bar["sar_trend"] < 0 and bar["had_up"] == 1 and short_break.iloc[i]:
                sig = self._entry(df, i, Direction.SHORT, bar["pull_high"] * (1 + buf), "swing break after pullback")
            if sig is not None:
                signals.append(sig)
        return signals

    def trailing_stops(self, df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray]:
        sar = df["sar"].to_numpy(dtype=float)
        trend = df["sar_trend"].to_numpy()
        long_stop = np.where(trend > 0, sar, np.nan)
        short_stop = np.where(trend < 0, sar, np.nan)
        return long_stop, short_stop
