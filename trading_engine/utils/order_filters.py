"""Quantity and price helpers for broker orders (fractional vs whole shares, bracket legs)."""

from __future__ import annotations
import math
from typing import Optional

from trading_engine.core.types import Direction

FRACTIONAL_STEP = 0.000001
MIN_TP_DISTANCE = 0.01
TP_FALLBACK_PCT = 0.005


def round_quantity(qty: float, fractionable: bool = True, step_size: float = FRACTIONAL_STEP) -> float:
    """Round down to step size (or whole shares); return 0 if nothing is left."""
    if qty <= 0:
        return 0.0
    if not fractionable:
        return float(math.floor(qty))
    rounded = math.floor(qty / step_size) * step_size
    return round(rounded, 8)


def round_price(price: float, tick_size: float = 0.01) -> float:
    """Round price to tick."""
    return round(round(price / tick_size) * tick_size, 8)


def bracket_take_profit(direction: Direction, entry_price: float, take_profit: Optional[float]) -> float:
    """
    Broker bracket orders reject a take-profit leg too close to (or on the wrong
    side of) the entry. Fall back to entry +/- 0.5% in that case.
    """
    if direction == Direction.LONG:
        if take_profit is None or take_profit <= entry_price + MIN_TP_DISTANCE:
            return round_price(entry_price * (1 + TP_FALLBACK_PCT))
    else:
        if take_profit is None or take_profit >= entry_price - MIN_TP_DISTANCE:
            return round_price(entry_price * (1 - TP_FALLBACK_PCT))
    return round_price(take_profit)


def scale_levels(signal_price: float, fill_price: float, stop_loss: float, take_profit: float) -> tuple[float, float]:
    """Shift SL/TP proportionally when the fill differs from the signal price."""
    if signal_price <= 0 or fill_price <= 0 or signal_price == fill_price:
        return stop_loss, take_profit
    ratio = fill_price / signal_price
    return stop_loss * ratio, take_profit * ratio
