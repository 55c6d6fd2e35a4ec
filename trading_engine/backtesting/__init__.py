"""Backtesting: position lifecycle, single-symbol engine, watchlist batches."""

from trading_engine.backtesting.lifecycle import BarView, PositionLifecycle
from trading_engine.backtesting.engine import BacktestEngine, BacktestResult
from trading_engine.backtesting.batch import (
    BatchEvent,
    BatchOrchestrator,
    BatchResult,
    PrefetchEvent,
    ProgressEvent,
    ResultEvent,
)

__all__ = [
    "BarView",
    "PositionLifecycle",
    "BacktestEngine",
    "BacktestResult",
    "BatchEvent",
    "BatchOrchestrator",
    "BatchResult",
    "PrefetchEvent",
    "ProgressEvent",
    "ResultEvent",
]
