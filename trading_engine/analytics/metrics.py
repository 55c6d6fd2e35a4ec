"""
Performance metrics over trade lists: win rate, risk/reward, compounded drawdown,
Sharpe, Sortino, profit factor, expectancy. Percent fields are already x100.
"""

from __future__ import annotations
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

import numpy as np

from trading_engine.core.types import CloseReason, Direction, Trade


@dataclass
class PerformanceMetrics:
    """Aggregate performance metrics."""
    total_return_pct: float
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float
    win_rate: float
    risk_reward: float
    profit_factor: float
    expectancy: float
    avg_return_pct: float
    avg_win_pct: float
    avg_loss_pct: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    open_trades: int
    total_pnl_amt: float

    def to_dict(self) -> dict:
        return {k: (None if isinstance(v, float) and not math.isfinite(v) else v) for k, v in asdict(self).items()}


def sharpe_ratio(returns: List[float], risk_free_rate: float = 0.0, periods_per_year: float = 252.0) -> float:
    """Annualized Sharpe. returns = list of period returns."""
    if not returns:
        return 0.0
    arr = np.array(returns)
    excess = arr - risk_free_rate / periods_per_year
    if excess.std() <= 1e-12:
        return 0.0
    return float(np.sqrt(periods_per_year) * excess.mean() / excess.std())


def sortino_ratio(returns: List[float], risk_free_rate: float = 0.0, periods_per_year: float = 252.0) -> float:
    """Annualized Sortino (downside deviation)."""
    if not returns:
        return 0.0
    arr = np.array(returns)
    excess = arr - risk_free_rate / periods_per_year
    downside = arr[arr < 0]
    if len(downside) == 0 or downside.std() <= 1e-12:
        return sharpe_ratio(returns, risk_free_rate, periods_per_year)
    return float(np.sqrt(periods_per_year) * excess.mean() / downside.std())


def equity_curve(returns_pct: Sequence[float], start: float = 100.0) -> List[float]:
    """Compound per-trade percent returns onto a starting equity."""
    curve = [start]
    for r in returns_pct:
        curve.append(curve[-1] * (1.0 + r / 100.0))
    return curve


def max_drawdown(curve: Sequence[float]) -> float:
    """Largest peak-to-trough decline of an equity curve, in percent (positive)."""
    if not curve:
        return 0.0
    arr = np.array(curve, dtype=float)
    peak = np.maximum.accumulate(arr)
    dd = (peak - arr) / np.where(peak != 0, peak, 1)
    return float(np.max(dd)) * 100.0


def win_rate(returns_pct: Iterable[float], provisional_wins: int = 0) -> float:
    """wins / (wins + losses) x 100. Zero returns count as neither; 0 when nothing resolved."""
    returns_pct = list(returns_pct)
    wins = sum(1 for r in returns_pct if r > 0) + provisional_wins
    losses = sum(1 for r in returns_pct if r < 0)
    if wins + losses == 0:
        return 0.0
    return wins / (wins + losses) * 100.0


def risk_reward(returns_pct: Iterable[float]) -> float:
    """|avg win / avg loss|; 0 when either side is missing."""
    returns_pct = list(returns_pct)
    wins = [r for r in returns_pct if r > 0]
    losses = [r for r in returns_pct if r < 0]
    if not wins or not losses:
        return 0.0
    return abs((sum(wins) / len(wins)) / (sum(losses) / len(losses)))


def profit_factor(pnls: List[float]) -> float:
    """Gross profit / gross loss. inf if no losses but some profit."""
    wins = sum(p for p in pnls if p > 0)
    losses = sum(-p for p in pnls if p < 0)
    if losses <= 0:
        return float("inf") if wins > 0 else 0.0
    return wins / losses


def expectancy(pnls: List[float]) -> float:
    """Average result per trade."""
    if not pnls:
        return 0.0
    return sum(pnls) / len(pnls)


def _exit_key(t: Trade):
    return (t.exit_time or t.entry_time, t.entry_time)


def filter_trades(
    trades: Iterable[Trade],
    direction: Optional[Direction] = None,
    since: Optional[datetime] = None,
) -> List[Trade]:
    """Projection used to recompute metrics without re-running the engine."""
    out = []
    for t in trades:
        if direction is not None and t.direction != direction:
            continue
        if since is not None and t.entry_time < since:
            continue
        out.append(t)
    return out


def compute_metrics(
    trades: Iterable[Trade],
    include_end_trades: bool = True,
    count_open_as_wins: bool = False,
    risk_free_rate: float = 0.0,
    periods_per_year: float = 252.0,
) -> PerformanceMetrics:
    """
    Metrics over closed trades in exit-time order. END-closed trades are dropped when
    include_end_trades is False. With count_open_as_wins, trades that were still open
    (or END-closed and excluded) with positive floating return count as provisional wins.
    """
    trades = list(trades)
    counted: List[Trade] = []
    unresolved: List[Trade] = []
    for t in trades:
        if t.is_open or (t.close_reason == CloseReason.END and not include_end_trades):
            unresolved.append(t)
        else:
            counted.append(t)
    counted.sort(key=_exit_key)
    rets = [t.return_pct for t in counted]
    provisional = sum(1 for t in unresolved if t.return_pct > 0) if count_open_as_wins else 0
    wins = [r for r in rets if r > 0]
    losses = [r for r in rets if r < 0]
    curve = equity_curve(rets)
    fractions = [r / 100.0 for r in rets]
    return PerformanceMetrics(
        total_return_pct=curve[-1] - 100.0,
        sharpe_ratio=sharpe_ratio(fractions, risk_free_rate, periods_per_year),
        sortino_ratio=sortino_ratio(fractions, risk_free_rate, periods_per_year),
        max_drawdown=max_drawdown(curve),
        win_rate=win_rate(rets, provisional),
        risk_reward=risk_reward(rets),
        profit_factor=profit_factor(rets),
        expectancy=expectancy([t.profit_loss_amt for t in counted]),
        avg_return_pct=expectancy(rets),
        avg_win_pct=sum(wins) / len(wins) if wins else 0.0,
        avg_loss_pct=sum(losses) / len(losses) if losses else 0.0,
        total_trades=len(counted),
        winning_trades=len(wins) + provisional,
        losing_trades=len(losses),
        open_trades=len([t for t in trades if t.is_open]),
        total_pnl_amt=sum(t.profit_loss_amt for t in counted),
    )
