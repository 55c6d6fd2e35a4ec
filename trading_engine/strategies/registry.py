"""Closed registry of strategies, dispatched by id."""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type

from trading_engine.core.errors import UnknownStrategyError
from trading_engine.strategies.base import BarsInput, BaseStrategy, StrategyEvaluation
from trading_engine.strategies.diamond_signals import DiamondSignalsStrategy
from trading_engine.strategies.hann_trend import HannTrendStrategy
from trading_engine.strategies.hybrid_ai_trend import HybridAITrendStrategy
from trading_engine.strategies.regression_scalping import RegressionScalpingStrategy
from trading_engine.strategies.smart_money_flow import SmartMoneyFlowStrategy


class StrategyId(str, Enum):
    REGRESSION_SCALPING = "regression_scalping"
    HYBRID_AI_TREND = "hybrid_ai_trend"
    DIAMOND_SIGNALS = "diamond_signals"
    SMART_MONEY_FLOW = "smart_money_flow"
    HANN_TREND = "hann_trend"


STRATEGIES: Dict[StrategyId, Type[BaseStrategy]] = {
    StrategyId.REGRESSION_SCALPING: RegressionScalpingStrategy,
    StrategyId.HYBRID_AI_TREND: HybridAITrendStrategy,
    StrategyId.DIAMOND_SIGNALS: DiamondSignalsStrategy,
    StrategyId.SMART_MONEY_FLOW: SmartMoneyFlowStrategy,
    StrategyId.HANN_TREND: HannTrendStrategy,
}


def strategy_class(name: str) -> Type[BaseStrategy]:
    try:
        return STRATEGIES[StrategyId(name)]
    except ValueError:
        raise UnknownStrategyError(f"unknown strategy: {name}") from None


def create_strategy(name: str, params: Optional[Mapping[str, Any]] = None) -> BaseStrategy:
    """Instantiate and validate params. Raises UnknownStrategyError / InvalidParameterError."""
    return strategy_class(name)(params)


def evaluate(
    name: str,
    bars: BarsInput,
    params: Optional[Mapping[str, Any]] = None,
    long_only: bool = False,
) -> StrategyEvaluation:
    return create_strategy(name, params).evaluate(bars, long_only=long_only)


def strategy_catalog() -> List[dict]:
    return [
        {
            "id": sid.value,
            "name": cls.label,
            "default_interval": cls.default_interval,
            "params": [spec.to_dict() for spec in cls.param_specs],
        }
        for sid, cls in STRATEGIES.items()
    ]
