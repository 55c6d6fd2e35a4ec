"""
Per-symbol analysis of a live session: re-run the backtest with the strategy's
session parameters and compare its trades with the live positions, plus a
broker reconciliation for the symbol.
"""

from __future__ import annotations
import logging
from typing import List, Optional

from trading_engine.backtesting.engine import BacktestEngine
from trading_engine.core.errors import NotFoundError
from trading_engine.core.types import Trade
from trading_engine.live.models import LiveSession, Position, SessionStrategy
from trading_engine.live.reconcile import BrokerMonitor
from trading_engine.live.session import LiveSessionManager
from trading_engine.strategies.registry import create_strategy

logger = logging.getLogger("trading_engine.live.analysis")

PRICE_TOLERANCE_PCT = 0.5


def compare_trades(positions: List[Position], trades: List[Trade], price_tolerance_pct: float = PRICE_TOLERANCE_PCT) -> dict:
    """Match live positions to backtest trades by entry time."""
    by_time = {t.entry_time: t for t in trades}
    matched, diffs, live_only = 0, [], []
    seen = set()
    for pos in positions:
        trade = by_time.get(pos.entry_time)
        if trade is None:
            live_only.append({"position_id": pos.id, "entry_time": pos.entry_time.isoformat(),
                              "direction": pos.direction.value, "entry_price": pos.entry_price})
            continue
        seen.add(trade.entry_time)
        problems = []
        if trade.direction != pos.direction:
            problems.append("direction")
        if trade.entry_price > 0:
            diff = abs(pos.entry_price - trade.entry_price) / trade.entry_price * 100.0
            if diff > price_tolerance_pct:
                problems.append("entry_price")
        if problems:
            diffs.append({
                "position_id": pos.id,
                "entry_time": pos.entry_time.isoformat(),
                "fields": problems,
                "live": {"direction": pos.direction.value, "entry_price": pos.entry_price},
                "backtest": {"direction": trade.direction.value, "entry_price": trade.entry_price},
            })
        else:
            matched += 1
    backtest_only = [
        {"entry_time": t.entry_time.isoformat(), "direction": t.direction.value, "entry_price": t.entry_price}
        for t in trades
        if t.entry_time not in seen
    ]
    return {"matched": matched, "diffs": diffs, "live_only": live_only, "backtest_only": backtest_only}


def analyze_symbol(
    manager: LiveSessionManager,
    session_id: int,
    symbol: str,
    strategy_id: Optional[int] = None,
    monitor: Optional[BrokerMonitor] = None,
) -> dict:
    symbol = symbol.strip().upper()
    with manager.store.scope() as db:
        session = db.get(LiveSession, session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        query = db.query(SessionStrategy).filter(SessionStrategy.session_id == session_id)
        if strategy_id is not None:
            query = query.filter(SessionStrategy.id == strategy_id)
        strategy_row = query.order_by(SessionStrategy.id).first()
        if strategy_row is None:
            raise NotFoundError(f"strategy {strategy_id} not found in session {session_id}")
        positions = (
            db.query(Position)
            .filter(
                Position.session_id == session_id,
                Position.strategy_id == strategy_row.id,
                Position.symbol == symbol,
            )
            .order_by(Position.id)
            .all()
        )
        interval = session.interval
        started_at = session.started_at
        name, params, long_only = strategy_row.name, dict(strategy_row.params or {}), bool(strategy_row.long_only)

    bars = manager.cache.get(symbol, interval)
    engine = BacktestEngine(
        create_strategy(name, params),
        manager.risk_manager,
        long_only=long_only,
        entry_on_next_open=manager.lifecycle.entry_on_next_open,
        count_open_as_wins=manager.count_open_as_wins,
    )
    result = engine.run(bars, symbol)
    window = [t for t in result.trades if started_at is None or t.entry_time >= started_at]
    payload = result.to_dict()
    payload["comparison"] = compare_trades(positions, window)
    payload["positions"] = [p.to_dict(name) for p in positions]
    if monitor is not None:
        report = monitor.check(session_id)
        report.details = [d for d in report.details if d.get("symbol") == symbol]
        payload["reconciliation"] = report.to_dict()
    logger.info("Analyzed %s in session %d: %d live, %d backtest", symbol, session_id, len(positions), len(window))
    return payload
