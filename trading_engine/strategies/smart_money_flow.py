"""
Smart money flow cloud: smoothed EMA basis with ATR cloud (tight inner band,
wide outer band) and a volume-weighted flow oscillator. Entries ("dots") fire on
a retest of the inner cloud in the direction of the basis slope and the flow.
Closing back through the far side of the cloud exits.
"""

from __future__ import annotations
from typing import List

import pandas as pd

from trading_engine.core.types import Direction, Signal, SignalKind
from trading_engine.strategies.base import BaseStrategy, ParamSpec
from trading_engine.strategies import indicators as ind


class SmartMoneyFlowStrategy(BaseStrategy):
    name = "smart_money_flow"
    label = "Smart Money Flow Cloud"
    default_interval = "4h"
    param_specs = (
        ParamSpec("trend_length", 34, 10, 100, 1, integer=True),
        ParamSpec("basis_smooth", 3, 1, 10, 1, integer=True),
        ParamSpec("flow_window", 24, 5, 60, 1, integer=True),
        ParamSpec("flow_smooth", 5, 1, 15, 1, integer=True),
        ParamSpec("flow_boost", 1.2, 0.5, 3.0, 0.1),
        ParamSpec("atr_length", 14, 5, 50, 1, integer=True),
        ParamSpec("band_tightness", 0.9, 0.1, 2.0, 0.1),
        ParamSpec("band_expansion", 2.2, 1.0, 5.0, 0.1),
        ParamSpec("dot_cooldown", 12, 0, 30, 1, integer=True),
        ParamSpec("risk_reward", 2.0, 1.0, 5.0, 0.1),
    )
    indicator_columns = ("basis", "inner_upper", "inner_lower", "outer_upper", "outer_lower", "flow")
    oscillator_columns = ("flow",)

    @property
    def required_bars(self) -> int:
        return int(self.p("trend_length")) * 3 + int(self.p("basis_smooth")) * 2

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        basis = ind.sma(ind.ema(df["close"], int(self.p("trend_length"))), int(self.p("basis_smooth")))
        a = ind.atr(df, int(self.p("atr_length")))
        df["basis"] = basis
        df["atr"] = a
        df["inner_upper"] = basis + a * self.p("band_tightness")
        df["inner_lower"] = basis - a * self.p("band_tightness")
        df["outer_upper"] = basis + a * self.p("band_expansion")
        df["outer_lower"] = basis - a * self.p("band_expansion")
        df["flow"] = ind.money_flow(
            df, int(self.p("flow_window")), int(self.p("flow_smooth")), self.p("flow_boost")
        )
        return df

    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        cooldown = int(self.p("dot_cooldown"))
        slope = df["basis"].diff()
        exit_long = ind.crossed_below(df["close"], df["inner_lower"])
        exit_short = ind.crossed_above(df["close"], df["inner_upper"])
        signals: List[Signal] = []
        last_dot = -cooldown - 1
        for i in range(1, len(df)):
            bar = df.iloc[i]
            if exit_long.iloc[i]:
                signals.append(self._signal(df, i, SignalKind.EXIT, "close below cloud", direction=Direction.LONG))
            elif exit_short.iloc[i]:
                signals.append(self._signal(df, i, SignalKind.EXIT, "close above cloud", direction=Direction.SHORT))
            if i - last_dot <= cooldown:
                continue
            sig = None
            if slope.iloc[i] > 0 and bar["flow"] > 0 and bar["low"] <= bar["inner_upper"] and bar["close"] > bar["basis"]:
                sig = self._entry(df, i, Direction.LONG, bar["inner_lower"], "cloud retest with inflow")
            elif slope.iloc[i] < 0 and bar["flow"] < 0 and bar["high"] >= bar["inner_lower"] and bar["close"] < bar["basis"]:
                sig = self._entry(df, i, Direction.SHORT, bar["inner_upper"], "cloud retest with outflow")
            if sig is not None:
                signals.append(sig)
                last_dot = i
        return signals
