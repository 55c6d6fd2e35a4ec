"""Abstract broker interface: account, positions, orders and order placement."""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from trading_engine.core.types import Direction


@dataclass
class OrderResult:
    """Result of placing an order."""
    success: bool
    order_id: Optional[str] = None
    avg_price: Optional[float] = None
    quantity: Optional[float] = None
    message: str = ""
    # refused by the broker, as opposed to not reaching it
    rejected: bool = False


@dataclass
class BrokerPosition:
    symbol: str
    direction: Direction
    quantity: float
    avg_entry_price: float
    current_price: Optional[float] = None
    unrealized_pl: float = 0.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "quantity": self.quantity,
            "avg_entry_price": self.avg_entry_price,
            "current_price": self.current_price,
            "unrealized_pl": self.unrealized_pl,
        }


@dataclass
class BrokerAccount:
    account_id: str
    status: str
    buying_power: float = 0.0
    portfolio_value: float = 0.0
    raw: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "status": self.status,
            "buying_power": self.buying_power,
            "portfolio_value": self.portfolio_value,
        }


class BrokerClient(ABC):
    """
    Abstract broker client. Implementations raise BrokerUnreachableError when the
    broker cannot be reached; an empty position list always means "no positions".
    Order methods never raise: a refused order comes back with rejected=True.
    """

    @abstractmethod
    def get_account(self) -> BrokerAccount:
        pass

    @abstractmethod
    def get_positions(self) -> List[BrokerPosition]:
        pass

    @abstractmethod
    def get_orders(self, status: str = "open") -> List[dict]:
        pass

    @abstractmethod
    def place_bracket_order(
        self,
        symbol: str,
        direction: Direction,
        quantity: float,
        stop_loss: float,
        take_profit: float,
        entry_price: float,
    ) -> OrderResult:
        """Market entry with attached SL + TP legs where the broker allows it."""
        pass

    @abstractmethod
    def close_position(self, symbol: str, quantity: Optional[float] = None) -> OrderResult:
        """Close quantity shares of symbol, or the whole position when quantity is None."""
        pass
