"""
Regression scalping: polynomial regression channel (center +/- multiplier x residual std).
With confirmation on, entries fire when price re-enters the channel after an excursion;
otherwise on the excursion itself. SL at the extreme of the last sl_lookback bars.
"""

from __future__ import annotations
from typing import List

import pandas as pd

from trading_engine.core.types import Direction, Signal
from trading_engine.strategies.base import BaseStrategy, ParamSpec
from trading_engine.strategies import indicators as ind


class RegressionScalpingStrategy(BaseStrategy):
    name = "regression_scalping"
    label = "Regression Scalping"
    default_interval = "5m"
    param_specs = (
        ParamSpec("degree", 2, 1, 5, 1, integer=True, label="Polynomial degree"),
        ParamSpec("length", 100, 20, 300, 10, integer=True, label="Regression length"),
        ParamSpec("multiplier", 3.0, 0.5, 5.0, 0.1, label="Channel multiplier"),
        ParamSpec("risk_reward", 2.5, 1.0, 5.0, 0.1, label="Risk/Reward"),
        ParamSpec("sl_lookback", 30, 5, 100, 5, integer=True, label="SL lookback"),
        ParamSpec("confirmation_required", 1, 0, 1, 1, toggle=True, label="Confirmation"),
    )
    indicator_columns = ("reg_center", "reg_upper", "reg_lower")

    @property
    def required_bars(self) -> int:
        return int(self.p("length")) + 20

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        center, spread = ind.regression_channel(df["close"], int(self.p("length")), int(self.p("degree")))
        df["reg_center"] = center
        df["reg_upper"] = center + self.p("multiplier") * spread
        df["reg_lower"] = center - self.p("multiplier") * spread
        lookback = int(self.p("sl_lookback"))
        df["swing_low"] = df["low"].rolling(lookback, min_periods=1).min()
        df["swing_high"] = df["high"].rolling(lookback, min_periods=1).max()
        return df

    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        close = df["close"]
        if self.p("confirmation_required"):
            long_mask = ind.crossed_above(close, df["reg_lower"])
            short_mask = ind.crossed_below(close, df["reg_upper"])
            why = "re-entry into channel"
        else:
            long_mask = ind.crossed_below(close, df["reg_lower"])
            short_mask = ind.crossed_above(close, df["reg_upper"])
            why = "channel break"
        signals: List[Signal] = []
        for i in range(1, len(df)):
            sig = None
            if long_mask.iloc[i]:
                sig = self._entry(df, i, Direction.LONG, float(df["swing_low"].iloc[i]), f"lower band {why}")
            elif short_mask.iloc[i]:
                sig = self._entry(df, i, Direction.SHORT, float(df["swing_high"].iloc[i]), f"upper band {why}")
            if sig is not None:
                signals.append(sig)
        return signals
