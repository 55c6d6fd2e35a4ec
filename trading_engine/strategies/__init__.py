"""Strategies: base interface, indicators and the five implementations."""

from trading_engine.strategies.base import BaseStrategy, ParamSpec, StrategyEvaluation, validate_params
from trading_engine.strategies.registry import (
    STRATEGIES,
    StrategyId,
    create_strategy,
    evaluate,
    strategy_catalog,
)

__all__ = [
    "BaseStrategy",
    "ParamSpec",
    "StrategyEvaluation",
    "validate_params",
    "STRATEGIES",
    "StrategyId",
    "create_strategy",
    "evaluate",
    "strategy_catalog",
]
