"""
Backtest engine: replays a strategy's signals over historical bars through the
shared position lifecycle. Closed bars only; entries at the signal-bar close by
default, or at the next bar's open with entry_on_next_open.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from trading_engine.analytics.metrics import PerformanceMetrics, compute_metrics, equity_curve
from trading_engine.backtesting.lifecycle import BarView, PositionLifecycle
from trading_engine.core.types import CloseReason, Direction, Signal, Trade
from trading_engine.data.bars import normalize_bars
from trading_engine.risk.manager import RiskManager
from trading_engine.strategies.base import BaseStrategy, StrategyEvaluation

logger = logging.getLogger("trading_engine.backtest")


@dataclass
class BacktestResult:
    """Backtest output: trades, metrics and chart payloads."""
    symbol: str
    trades: List[Trade] = field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None
    markers: List[dict] = field(default_factory=list)
    overlays: Dict[str, List[dict]] = field(default_factory=dict)
    indicators: Dict[str, List[dict]] = field(default_factory=dict)
    equity_curve: List[dict] = field(default_factory=list)
    chart_data: List[dict] = field(default_factory=list)
    evaluation: Optional[StrategyEvaluation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "trades": [t.to_dict() for t in self.trades],
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "markers": self.markers,
            "overlays": self.overlays,
            "indicators": self.indicators,
            "equity_curve": self.equity_curve,
            "chart_data": self.chart_data,
        }


class _TradeBook:
    """In-memory PositionBook: at most one open Trade at a time."""

    def __init__(self, symbol: str, strategy: str, risk_manager: RiskManager):
        self.symbol = symbol
        self.strategy = strategy
        self.risk_manager = risk_manager
        self.trades: List[Trade] = []
        self._open: Optional[Trade] = None

    def current(self) -> Optional[Trade]:
        return self._open

    def open(self, direction, price, stop_loss, take_profit, time, signal: Signal) -> bool:
        check = self.risk_manager.validate_signal(price, stop_loss, take_profit, direction)
        if not check.allowed:
            logger.debug("%s %s entry rejected at %s: %s", self.symbol, direction.value, time, check.reason)
            return False
        self._open = Trade(
            symbol=self.symbol,
            direction=direction,
            entry_time=time,
            entry_price=price,
            quantity=check.quantity,
            stop_loss=stop_loss,
            take_profit=take_profit,
            strategy=self.strategy,
            metadata={"signal_reason": signal.reason, "signal_time": signal.time.isoformat()},
        )
        self.trades.append(self._open)
        return True

    def close(self, price: float, time: datetime, reason: CloseReason, note: str = "") -> None:
        if self._open is None:
            return
        self._open.close(price, time, reason)
        if note:
            self._open.metadata["exit_reason"] = note
        self._open = None

    def trail(self, new_stop: float, time: datetime) -> None:
        if self._open is not None:
            self._open.current_stop = new_stop

    def mark(self, price: float, time: datetime) -> None:
        if self._open is not None:
            self._open.mark(price)


def _epoch(ts) -> int:
    return int(pd.Timestamp(ts).timestamp())


class BacktestEngine:
    """
    Runs one strategy on one symbol's bars. Positions still open when the bars run
    out are closed with END at the last close; include_end_trades decides whether
    they count in the metrics.
    """

    def __init__(
        self,
        strategy: BaseStrategy,
        risk_manager: Optional[RiskManager] = None,
        long_only: bool = False,
        entry_on_next_open: bool = False,
        include_end_trades: bool = True,
        count_open_as_wins: bool = False,
    ):
        self.strategy = strategy
        self.risk_manager = risk_manager or RiskManager()
        self.long_only = long_only
        self.lifecycle = PositionLifecycle(entry_on_next_open=entry_on_next_open)
        self.include_end_trades = include_end_trades
        self.count_open_as_wins = count_open_as_wins

    def run(self, df: pd.DataFrame, symbol: str = "") -> BacktestResult:
        """Run backtest on OHLCV DataFrame (columns: time, open, high, low, close, volume)."""
        df = normalize_bars(df)
        evaluation = self.strategy.evaluate(df, long_only=self.long_only)
        book = _TradeBook(symbol, self.strategy.name, self.risk_manager)
        by_index = evaluation.signals_by_index()
        trail_long = evaluation.trailing_long
        trail_short = evaluation.trailing_short
        pending: Optional[Signal] = None

        for i, row in enumerate(df.itertuples(index=False)):
            bar = BarView(row.time.to_pydatetime(), float(row.open), float(row.high), float(row.low), float(row.close))
            pending = self.lifecycle.step(
                book,
                bar,
                by_index.get(i, ()),
                pending,
                trail_long[i] if trail_long else None,
                trail_short[i] if trail_short else None,
            )

        if book.current() is not None:
            last = df.iloc[-1]
            book.close(float(last["close"]), last["time"].to_pydatetime(), CloseReason.END)

        trades = book.trades
        metrics = compute_metrics(trades, self.include_end_trades, self.count_open_as_wins)
        logger.info(
            "Backtest %s %s: %d bars, %d signals, %d trades, win rate %.1f%%",
            self.strategy.name, symbol, len(df), len(evaluation.signals), len(trades), metrics.win_rate,
        )
        result = BacktestResult(symbol=symbol, trades=trades, metrics=metrics, evaluation=evaluation)
        result.markers = build_markers(trades)
        result.overlays, result.indicators = self._series_payload(evaluation)
        result.equity_curve = build_equity_curve(trades)
        result.chart_data = [
            {"time": _epoch(r.time), "open": r.open, "high": r.high, "low": r.low, "close": r.close, "volume": r.volume}
            for r in df.itertuples(index=False)
        ]
        return result

    def _series_payload(self, evaluation: StrategyEvaluation):
        times = [_epoch(t) for t in evaluation.times]
        overlays: Dict[str, List[dict]] = {}
        indicators: Dict[str, List[dict]] = {}
        for name, values in evaluation.indicator_series.items():
            points = [{"time": t, "value": v} for t, v in zip(times, values) if v is not None]
            target = indicators if name in self.strategy.oscillator_columns else overlays
            target[name] = points
        if evaluation.trailing_long is not None:
            shorts = evaluation.trailing_short or [None] * len(times)
            overlays["trailing_stop"] = [
                {"time": t, "value": lv if lv is not None else sv}
                for t, lv, sv in zip(times, evaluation.trailing_long, shorts)
                if lv is not None or sv is not None
            ]
        return overlays, indicators


def build_markers(trades: List[Trade]) -> List[dict]:
    markers = []
    for t in trades:
        is_long = t.direction == Direction.LONG
        markers.append({
            "time": _epoch(t.entry_time),
            "position": "belowBar" if is_long else "aboveBar",
            "shape": "arrowUp" if is_long else "arrowDown",
            "kind": "entry",
            "direction": t.direction.value,
            "price": t.entry_price,
            "text": f"{t.direction.value} {t.entry_price:.2f}",
        })
        if t.exit_time is not None:
            markers.append({
                "time": _epoch(t.exit_time),
                "position": "aboveBar" if is_long else "belowBar",
                "shape": "circle",
                "kind": "exit",
                "direction": t.direction.value,
                "price": t.exit_price,
                "reason": t.close_reason.value if t.close_reason else None,
                "text": f"{t.close_reason.value if t.close_reason else 'EXIT'} {t.return_pct:+.2f}%",
            })
    markers.sort(key=lambda m: m["time"])
    return markers


def build_equity_curve(trades: List[Trade]) -> List[dict]:
    closed = sorted((t for t in trades if not t.is_open), key=lambda t: t.exit_time)
    curve = equity_curve([t.return_pct for t in closed])
    return [{"time": _epoch(t.exit_time), "equity": eq} for t, eq in zip(closed, curve[1:])]
