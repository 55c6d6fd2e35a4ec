"""
Broker reconciliation: compare internally tracked open positions against what the
broker reports, per symbol.

An unreachable broker yields connection="lost" and is recorded on the session;
it is never read as "the broker has no positions".
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from trading_engine.core.errors import BrokerUnreachableError, NotFoundError
from trading_engine.execution.base import BrokerAccount, BrokerClient, BrokerPosition
from trading_engine.live.models import LiveSession, LogEvent, Position
from trading_engine.live.store import Store

logger = logging.getLogger("trading_engine.live.reconcile")

ENTRY_PRICE_DIFF = "ENTRY_PRICE_DIFF"
MISSING_POSITION = "MISSING_POSITION"
EXTRA_POSITION = "EXTRA_POSITION"

CONNECTION_OK = "ok"
CONNECTION_LOST = "lost"
CONNECTION_DISABLED = "disabled"


@dataclass
class ReconcileReport:
    matches: int = 0
    mismatches: int = 0
    details: List[dict] = field(default_factory=list)
    connection: str = CONNECTION_OK
    error: str = ""
    account: Optional[dict] = None
    checked_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "matches": self.matches,
            "mismatches": self.mismatches,
            "details": self.details,
            "connection": self.connection,
            "error": self.error,
            "account": self.account,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


def _weighted_entry(positions: List) -> float:
    qty = sum(p.quantity for p in positions)
    if qty <= 0:
        return positions[0].entry_price
    return sum(p.entry_price * p.quantity for p in positions) / qty


def reconcile(
    internal_positions: Iterable,
    broker_account: Optional[BrokerAccount],
    broker_positions: Iterable[BrokerPosition],
    broker_orders: Iterable[dict] = (),
    tolerance_pct: float = 0.5,
) -> ReconcileReport:
    """
    internal_positions: open positions with symbol, direction, entry_price and quantity.
    Several internal positions on one symbol (multi-strategy) are compared as one
    quantity-weighted entry. A symbol with a pending open order at the broker is
    not reported missing.
    """
    internal: Dict[str, List] = {}
    for p in internal_positions:
        internal.setdefault(p.symbol.upper(), []).append(p)
    broker = {bp.symbol.upper(): bp for bp in broker_positions}
    pending = {str(o.get("symbol", "")).upper() for o in broker_orders}

    report = ReconcileReport(
        account=broker_account.to_dict() if broker_account else None,
        checked_at=datetime.now(timezone.utc),
    )
    for symbol in sorted(internal):
        ours = internal[symbol]
        theirs = broker.get(symbol)
        entry = _weighted_entry(ours)
        if theirs is None:
            if symbol in pending:
                report.matches += 1
                continue
            report.mismatches += 1
            report.details.append({
                "type": MISSING_POSITION,
                "symbol": symbol,
                "internal_entry_price": entry,
                "internal_quantity": sum(p.quantity for p in ours),
            })
            continue
        diff_pct = abs(theirs.avg_entry_price - entry) / entry * 100.0 if entry > 0 else 0.0
        if diff_pct > tolerance_pct:
            report.mismatches += 1
            report.details.append({
                "type": ENTRY_PRICE_DIFF,
                "symbol": symbol,
                "internal_entry_price": entry,
                "broker_entry_price": theirs.avg_entry_price,
                "diff_pct": diff_pct,
            })
        else:
            report.matches += 1
    for symbol in sorted(set(broker) - set(internal)):
        bp = broker[symbol]
        report.mismatches += 1
        report.details.append({
            "type": EXTRA_POSITION,
            "symbol": symbol,
            "broker_entry_price": bp.avg_entry_price,
            "broker_quantity": bp.quantity,
            "direction": bp.direction.value,
        })
    return report


class BrokerMonitor:
    """Periodic / on-demand broker check for one session; persists the connection flag."""

    def __init__(self, store: Store, broker: Optional[BrokerClient], tolerance_pct: float = 0.5):
        self.store = store
        self.broker = broker
        self.tolerance_pct = tolerance_pct

    def check(self, session_id: int) -> ReconcileReport:
        with self.store.scope() as db:
            session = db.get(LiveSession, session_id)
            if session is None:
                raise NotFoundError(f"session {session_id} not found")
            positions = (
                db.query(Position)
                .filter(Position.session_id == session_id, Position.is_closed.is_(False))
                .all()
            )
        if self.broker is None:
            return ReconcileReport(connection=CONNECTION_DISABLED, checked_at=datetime.now(timezone.utc))

        try:
            account = self.broker.get_account()
            broker_positions = self.broker.get_positions()
            orders = self.broker.get_orders()
        except BrokerUnreachableError as e:
            logger.warning("Session %d: broker unreachable: %s", session_id, e.detail)
            report = ReconcileReport(
                connection=CONNECTION_LOST, error=e.detail, checked_at=datetime.now(timezone.utc)
            )
            self._record(session_id, report)
            return report

        report = reconcile(positions, account, broker_positions, orders, self.tolerance_pct)
        self._record(session_id, report)
        if report.mismatches:
            logger.info("Session %d: %d broker mismatches", session_id, report.mismatches)
        return report

    def _record(self, session_id: int, report: ReconcileReport) -> None:
        ok = report.connection == CONNECTION_OK
        with self.store.scope() as db:
            session = db.get(LiveSession, session_id)
            was_active = session.alpaca_active
            session.alpaca_active = ok
            session.alpaca_last_error = None if ok else report.error
            session.alpaca_checked_at = report.checked_at
            if not ok and was_active is not False:
                db.add(LogEvent(
                    session_id=session_id, level="ERROR", symbol="",
                    message=f"Broker connection lost: {report.error}",
                ))
