"""
Nadaraya-Watson Bollinger (hybrid AI trend).

A causal Gaussian-kernel estimate of price carries four standard-deviation bands.
Entries are mean reversion on band-1 crosses, optionally gated by a trend score
(percent of recent closes above the estimate), a confirmation candle and a
minimum distance from the estimate.
"""

from __future__ import annotations
from typing import List

import pandas as pd

from trading_engine.core.types import Direction, Signal
from trading_engine.strategies.base import BaseStrategy, ParamSpec
from trading_engine.strategies import indicators as ind

BANDS = (1, 2, 3, 4)


class HybridAITrendStrategy(BaseStrategy):
    name = "hybrid_ai_trend"
    label = "Nadaraya-Watson Bollinger"
    default_interval = "5m"
    param_specs = (
        ParamSpec("bb1_period", 20, 5, 50, 1, integer=True),
        ParamSpec("bb1_stdev", 3.0, 1.0, 6.0, 0.25),
        ParamSpec("bb2_period", 75, 20, 200, 5, integer=True),
        ParamSpec("bb2_stdev", 3.0, 1.0, 6.0, 0.25),
        ParamSpec("bb3_period", 100, 50, 300, 10, integer=True),
        ParamSpec("bb3_stdev", 4.0, 1.0, 6.0, 0.25),
        ParamSpec("bb4_period", 100, 50, 300, 10, integer=True),
        ParamSpec("bb4_stdev", 4.25, 1.0, 6.0, 0.25),
        ParamSpec("nw_bandwidth", 6.0, 1.0, 15.0, 0.5, label="Kernel bandwidth"),
        ParamSpec("nw_lookback", 499, 50, 999, 10, integer=True, label="Kernel lookback"),
        ParamSpec("sl_buffer", 1.5, 0.0, 5.0, 0.1, label="SL buffer %"),
        ParamSpec("risk_reward", 2.0, 1.0, 5.0, 0.1),
        ParamSpec("hybrid_filter", 0, 0, 1, 1, toggle=True, label="Trend filter"),
        ParamSpec("hybrid_long_thresh", 75, 0, 100, 5, label="Long threshold"),
        ParamSpec("hybrid_short_thresh", 25, 0, 100, 5, label="Short threshold"),
        ParamSpec("confirm_candle", 0, 0, 1, 1, toggle=True, label="Confirmation candle"),
        ParamSpec("min_band_dist", 0.0, 0.0, 3.0, 0.1, label="Min distance %"),
    )
    indicator_columns = (
        "nw",
        "upper1", "lower1", "upper2", "lower2",
        "upper3", "lower3", "upper4", "lower4",
        "trend_score",
    )
    oscillator_columns = ("trend_score",)

    @property
    def required_bars(self) -> int:
        periods = [int(self.p(f"bb{k}_period")) for k in BANDS]
        return max([int(self.p("nw_lookback"))] + periods) + 1

    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.copy()
        close = df["close"]
        nw = ind.nadaraya_watson(close, self.p("nw_bandwidth"), int(self.p("nw_lookback")))
        df["nw"] = nw
        for k in BANDS:
            dev = self.p(f"bb{k}_stdev") * ind.rolling_std(close, int(self.p(f"bb{k}_period")))
            df[f"upper{k}"] = nw + dev
            df[f"lower{k}"] = nw - dev
        df["trend_score"] = (close > nw).astype(float).rolling(int(self.p("bb2_period"))).mean() * 100.0
        return df

    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        close = df["close"]
        long_cross = ind.crossed_below(close, df["lower1"])
        short_cross = ind.crossed_above(close, df["upper1"])
        confirm = bool(self.p("confirm_candle"))
        use_filter = bool(self.p("hybrid_filter"))
        min_dist = self.p("min_band_dist")
        buf = self.p("sl_buffer") / 100.0
        signals: List[Signal] = []
        for i in range(2, len(df)):
            # with a confirmation candle the cross happened one bar earlier
            c = i - 1 if confirm else i
            bar = df.iloc[i]
            sig = None
            if long_cross.iloc[c]:
                ok = not confirm or bar["close"] > bar["open"]
                dist = (df["nw"].iloc[c] - close.iloc[c]) / close.iloc[c] * 100.0
                ok = ok and dist >= min_dist
                if use_filter:
                    ok = ok and df["trend_score"].iloc[i] >= self.p("hybrid_long_thresh")
                if ok:
                    sig = self._entry(df, i, Direction.LONG, bar["low"] * (1 - buf), "close below band 1")
            elif short_cross.iloc[c]:
                ok = not confirm or bar["close"] < bar["open"]
                dist = (close.iloc[c] - df["nw"].iloc[c]) / close.iloc[c] * 100.0
                ok = ok and dist >= min_dist
                if use_filter:
                    ok = ok and df["trend_score"].iloc[i] <= self.p("hybrid_short_thresh")
                if ok:
                    sig = self._entry(df, i, Direction.SHORT, bar["high"] * (1 + buf), "close above band 1")
            if sig is not None:
                signals.append(sig)
        return signals
