"""Abstract strategy: parameter specs, indicators, signal generation."""

from __future__ import annotations
import math
import numbers
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from trading_engine.core.errors import InvalidParameterError
from trading_engine.core.types import Bar, Direction, Signal, SignalKind
from trading_engine.data.bars import bars_to_frame, normalize_bars

Params = Dict[str, float]
BarsInput = Union[pd.DataFrame, Sequence[Bar]]


@dataclass(frozen=True)
class ParamSpec:
    """Bounds for one strategy parameter. Toggles are 0/1."""
    key: str
    default: float
    min: float
    max: float
    step: float = 1.0
    integer: bool = False
    toggle: bool = False
    label: str = ""

    def coerce(self, value: Any) -> float:
        if isinstance(value, bool):
            value = int(value)
        if isinstance(value, str):
            try:
                value = float(value)
            except ValueError:
                raise InvalidParameterError(self.key, f"not numeric: {value!r}") from None
        if not isinstance(value, numbers.Real) or math.isnan(value):
            raise InvalidParameterError(self.key, f"not numeric: {value!r}")
        if self.toggle:
            if value not in (0, 1):
                raise InvalidParameterError(self.key, "toggle must be 0 or 1")
            return int(value)
        if value < self.min or value > self.max:
            raise InvalidParameterError(self.key, f"{value} outside [{self.min}, {self.max}]")
        if self.integer:
            if float(value) != int(value):
                raise InvalidParameterError(self.key, f"{value} is not an integer")
            return int(value)
        return float(value)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "label": self.label or self.key,
            "default": self.default,
            "min": self.min,
            "max": self.max,
            "step": self.step,
            "integer": self.integer,
            "toggle": self.toggle,
        }


def validate_params(specs: Iterable[ParamSpec], params: Optional[Mapping[str, Any]]) -> Params:
    """Missing keys take defaults; unknown keys are ignored; bad values raise InvalidParameterError."""
    params = params or {}
    out: Params = {}
    for spec in specs:
        if spec.key in params and params[spec.key] is not None:
            out[spec.key] = spec.coerce(params[spec.key])
        else:
            out[spec.key] = int(spec.default) if (spec.integer or spec.toggle) else float(spec.default)
    return out


@dataclass
class StrategyEvaluation:
    """Signals plus indicator overlays (NaN -> None) and optional trailing-stop series."""
    signals: List[Signal] = field(default_factory=list)
    indicator_series: Dict[str, List[Optional[float]]] = field(default_factory=dict)
    trailing_long: Optional[List[Optional[float]]] = None
    trailing_short: Optional[List[Optional[float]]] = None
    times: List[pd.Timestamp] = field(default_factory=list)

    def signals_by_index(self) -> Dict[int, List[Signal]]:
        out: Dict[int, List[Signal]] = {}
        for s in self.signals:
            out.setdefault(s.index, []).append(s)
        return out


def to_frame(bars: BarsInput) -> pd.DataFrame:
    if isinstance(bars, pd.DataFrame):
        return normalize_bars(bars)
    return bars_to_frame(bars)


def _series_to_list(values: Iterable[float]) -> List[Optional[float]]:
    return [None if v is None or not np.isfinite(v) else float(v) for v in values]


class BaseStrategy(ABC):
    """
    Strategy computes indicators and emits signals on closed bars. Never looks ahead:
    the decision at bar i uses bars 0..i only.
    """

    name: ClassVar[str] = ""
    label: ClassVar[str] = ""
    default_interval: ClassVar[str] = "1h"
    param_specs: ClassVar[Tuple[ParamSpec, ...]] = ()
    indicator_columns: ClassVar[Tuple[str, ...]] = ()
    # indicator columns drawn in their own pane rather than over price
    oscillator_columns: ClassVar[Tuple[str, ...]] = ()

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params: Params = validate_params(self.param_specs, params)

    def p(self, key: str) -> float:
        return self.params[key]

    @property
    @abstractmethod
    def required_bars(self) -> int:
        """Minimum history before any signal may be emitted."""
        pass

    @abstractmethod
    def compute_indicators(self, df: pd.DataFrame) -> pd.DataFrame:
        """Add indicator columns to OHLCV DataFrame. No lookahead."""
        pass

    @abstractmethod
    def generate_signals(self, df: pd.DataFrame) -> List[Signal]:
        """Signals over the whole frame (output of compute_indicators)."""
        pass

    def trailing_stops(self, df: pd.DataFrame) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Optional (long_stop, short_stop) arrays; NaN where undefined."""
        return None

    def evaluate(self, bars: BarsInput, long_only: bool = False) -> StrategyEvaluation:
        df = to_frame(bars)
        if len(df) < self.required_bars:
            return StrategyEvaluation(times=list(df["time"]))
        ind = self.compute_indicators(df)
        warmup = self.required_bars - 1
        signals = [s for s in self.generate_signals(ind) if s.index >= warmup]
        if long_only:
            signals = _long_only(signals)
        result = StrategyEvaluation(
            signals=signals,
            indicator_series={c: _series_to_list(ind[c].to_numpy()) for c in self.indicator_columns if c in ind},
            times=list(df["time"]),
        )
        trail = self.trailing_stops(ind)
        if trail is not None:
            result.trailing_long = _series_to_list(trail[0])
            result.trailing_short = _series_to_list(trail[1])
        return result

    # Helpers for subclasses

    def _signal(
        self,
        df: pd.DataFrame,
        i: int,
        kind: SignalKind,
        reason: str,
        stop_loss: float = 0.0,
        take_profit: float = 0.0,
        direction: Optional[Direction] = None,
    ) -> Signal:
        if direction is None and kind != SignalKind.EXIT:
            direction = Direction.LONG if kind == SignalKind.ENTRY_LONG else Direction.SHORT
        return Signal(
            time=df["time"].iloc[i].to_pydatetime(),
            kind=kind,
            price=float(df["close"].iloc[i]),
            reason=reason,
            stop_loss=float(stop_loss),
            take_profit=float(take_profit),
            index=i,
            direction=direction,
        )

    def _entry(
        self, df: pd.DataFrame, i: int, direction: Direction, stop_loss: float, reason: str
    ) -> Optional[Signal]:
        """Entry at bar close with TP at risk_reward x risk. None if the stop is on the wrong side."""
        entry = float(df["close"].iloc[i])
        rr = self.params.get("risk_reward", 2.0)
        if direction == Direction.LONG:
            risk = entry - stop_loss
            take_profit = entry + rr * risk
            kind = SignalKind.ENTRY_LONG
        else:
            risk = stop_loss - entry
            take_profit = entry - rr * risk
            kind = SignalKind.ENTRY_SHORT
        if not np.isfinite(risk) or risk <= 0 or take_profit <= 0:
            return None
        return self._signal(df, i, kind, reason, stop_loss, take_profit, direction)


def _long_only(signals: List[Signal]) -> List[Signal]:
    out = []
    for s in signals:
        if s.kind == SignalKind.ENTRY_SHORT:
            out.append(Signal(
                time=s.time,
                kind=SignalKind.EXIT,
                price=s.price,
                reason=f"{s.reason} (long only: exit)",
                index=s.index,
                direction=Direction.LONG,
            ))
        elif s.kind == SignalKind.EXIT and s.direction == Direction.SHORT:
            continue
        else:
            out.append(s)
    return out
