"""Live trading: persisted sessions, scheduler, reconciliation, notifications."""

from trading_engine.live.store import Store
from trading_engine.live.session import LiveSessionManager, config_hash
from trading_engine.live.scheduler import SessionScheduler
from trading_engine.live.reconcile import BrokerMonitor, ReconcileReport, reconcile
from trading_engine.live.analysis import analyze_symbol, compare_trades
from trading_engine.live.notifier import TradeNotifier

__all__ = [
    "Store",
    "LiveSessionManager",
    "config_hash",
    "SessionScheduler",
    "BrokerMonitor",
    "ReconcileReport",
    "reconcile",
    "analyze_symbol",
    "compare_trades",
    "TradeNotifier",
]
