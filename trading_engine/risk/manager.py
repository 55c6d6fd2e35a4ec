"""
Risk manager: fixed-amount position sizing plus sanity checks on the signal levels.
Quantity = trade_amount / entry_price (fractional) or floored to whole shares.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from trading_engine.core.types import Direction
from trading_engine.utils.order_filters import round_quantity

logger = logging.getLogger("trading_engine.risk")


@dataclass
class RiskResult:
    """Result of risk check: allowed or rejected + reason."""
    allowed: bool
    quantity: float = 0.0
    reason: str = ""


class RiskManager:
    """
    Enforces: stop on the correct side of entry, min risk-reward, min notional.
    Sizing is fixed-amount per trade.
    """

    def __init__(
        self,
        trade_amount: float = 1000.0,
        min_notional: float = 1.0,
        min_risk_reward: float = 0.0,
        fractionable: bool = True,
    ):
        self.trade_amount = trade_amount
        self.min_notional = min_notional
        self.min_risk_reward = min_risk_reward
        self.fractionable = fractionable

    @staticmethod
    def risk_reward_ratio(entry: float, stop: float, tp: float) -> float:
        """Reward/risk of the planned levels."""
        risk = abs(entry - stop)
        if risk <= 0:
            return 0.0
        return abs(tp - entry) / risk

    def position_size(self, entry_price: float, trade_amount: Optional[float] = None) -> float:
        amount = self.trade_amount if trade_amount is None else trade_amount
        if entry_price <= 0 or amount <= 0:
            return 0.0
        return round_quantity(amount / entry_price, fractionable=self.fractionable)

    def validate_signal(
        self,
        entry_price: float,
        stop_price: float,
        tp_price: float,
        direction: Direction,
        trade_amount: Optional[float] = None,
    ) -> RiskResult:
        """Validate levels and compute quantity. Stop/TP of 0 mean 'not set'."""
        if entry_price <= 0:
            return RiskResult(allowed=False, reason="non-positive entry price")
        if stop_price:
            if abs(entry_price - stop_price) <= 0:
                return RiskResult(allowed=False, reason="zero stop distance")
            wrong_side = stop_price > entry_price if direction == Direction.LONG else stop_price < entry_price
            if wrong_side:
                return RiskResult(allowed=False, reason="stop on wrong side of entry")
            if tp_price:
                rr = self.risk_reward_ratio(entry_price, stop_price, tp_price)
                if rr < self.min_risk_reward:
                    return RiskResult(allowed=False, reason=f"risk_reward {rr:.2f} < {self.min_risk_reward}")

        qty = self.position_size(entry_price, trade_amount)
        if qty <= 0:
            return RiskResult(allowed=False, reason="qty rounded to 0")
        notional = qty * entry_price
        if notional < self.min_notional:
            return RiskResult(allowed=False, reason=f"notional {notional:.2f} < min {self.min_notional}")
        return RiskResult(allowed=True, quantity=qty, reason="")
