"""Execution: broker abstraction and Alpaca REST implementation."""

from trading_engine.execution.base import BrokerAccount, BrokerClient, BrokerPosition, OrderResult
from trading_engine.execution.alpaca import AlpacaClient, order_payload

__all__ = ["BrokerAccount", "BrokerClient", "BrokerPosition", "OrderResult", "AlpacaClient", "order_payload"]
