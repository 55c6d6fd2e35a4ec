"""
Core data types for bars, signals and trades.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG


class SignalKind(str, Enum):
    ENTRY_LONG = "ENTRY_LONG"
    ENTRY_SHORT = "ENTRY_SHORT"
    EXIT = "EXIT"


class CloseReason(str, Enum):
    TP = "TP"
    SL = "SL"
    SIGNAL = "SIGNAL"
    MANUAL = "MANUAL"
    END = "END"


def return_pct(direction: Direction, entry_price: float, price: float) -> float:
    """Percent return (already x100) of a position marked at price."""
    if entry_price <= 0:
        return 0.0
    if direction == Direction.LONG:
        return (price - entry_price) / entry_price * 100.0
    return (entry_price - price) / entry_price * 100.0


@dataclass(frozen=True)
class Bar:
    """OHLCV candle."""
    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Signal:
    """
    Evaluator output for one bar-close decision point.
    For EXIT, direction names the side to flatten (None = any side).
    """
    time: datetime
    kind: SignalKind
    price: float
    reason: str = ""
    stop_loss: float = 0.0
    take_profit: float = 0.0
    index: int = -1
    direction: Optional[Direction] = None

    @property
    def is_entry(self) -> bool:
        return self.kind != SignalKind.EXIT

    @property
    def entry_direction(self) -> Optional[Direction]:
        if self.kind == SignalKind.ENTRY_LONG:
            return Direction.LONG
        if self.kind == SignalKind.ENTRY_SHORT:
            return Direction.SHORT
        return None

    def to_dict(self) -> dict:
        return {
            "time": self.time.isoformat(),
            "kind": self.kind.value,
            "price": self.price,
            "reason": self.reason,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "index": self.index,
            "direction": self.direction.value if self.direction else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        return cls(
            time=datetime.fromisoformat(data["time"]),
            kind=SignalKind(data["kind"]),
            price=float(data["price"]),
            reason=data.get("reason", ""),
            stop_loss=float(data.get("stop_loss") or 0.0),
            take_profit=float(data.get("take_profit") or 0.0),
            index=int(data.get("index", -1)),
            direction=Direction(data["direction"]) if data.get("direction") else None,
        )


@dataclass
class Trade:
    """Backtest trade. Open until close() is called."""
    symbol: str
    direction: Direction
    entry_time: datetime
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    current_stop: float = 0.0
    exit_time: Optional[datetime] = None
    exit_price: Optional[float] = None
    close_reason: Optional[CloseReason] = None
    return_pct: float = 0.0
    current_price: Optional[float] = None
    is_open: bool = True
    strategy: str = ""
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.current_stop:
            self.current_stop = self.stop_loss
        if self.current_price is None:
            self.current_price = self.entry_price

    @property
    def profit_loss_amt(self) -> float:
        return self.quantity * self.entry_price * self.return_pct / 100.0

    def mark(self, price: float) -> None:
        """Update floating P/L while the trade is open."""
        self.current_price = price
        self.return_pct = return_pct(self.direction, self.entry_price, price)

    def close(self, price: float, time: datetime, reason: CloseReason) -> None:
        self.mark(price)
        self.exit_price = price
        self.exit_time = time
        self.close_reason = reason
        self.is_open = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        data["close_reason"] = self.close_reason.value if self.close_reason else None
        data["entry_time"] = self.entry_time.isoformat()
        data["exit_time"] = self.exit_time.isoformat() if self.exit_time else None
        data["profit_loss_amt"] = self.profit_loss_amt
        return data
