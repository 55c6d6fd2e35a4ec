"""Analytics: trade metrics (win rate, R/R, drawdown, Sharpe, Sortino, etc.)."""

from trading_engine.analytics.metrics import (
    PerformanceMetrics,
    compute_metrics,
    equity_curve,
    filter_trades,
    sharpe_ratio,
    sortino_ratio,
    max_drawdown,
    win_rate,
    risk_reward,
    profit_factor,
    expectancy,
)

__all__ = [
    "PerformanceMetrics",
    "compute_metrics",
    "equity_curve",
    "filter_trades",
    "sharpe_ratio",
    "sortino_ratio",
    "max_drawdown",
    "win_rate",
    "risk_reward",
    "profit_factor",
    "expectancy",
]
