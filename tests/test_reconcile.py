"""Broker reconciliation and the connection monitor."""

from dataclasses import dataclass

import pytest
from trading_engine.core.errors import NotFoundError
from trading_engine.core.types import Direction
from trading_engine.data.cache import BarCache
from trading_engine.execution.base import BrokerPosition
from trading_engine.live.reconcile import (
    CONNECTION_DISABLED,
    CONNECTION_LOST,
    CONNECTION_OK,
    ENTRY_PRICE_DIFF,
    EXTRA_POSITION,
    MISSING_POSITION,
    BrokerMonitor,
    reconcile,
)
from trading_engine.live.session import LiveSessionManager

from conftest import EPOCH, SAMPLE_PARAMS, FakeBroker, FakeProvider, uptrend_with_dip


@dataclass
class Held:
    symbol: str
    entry_price: float
    quantity: float = 1.0
    direction: Direction = Direction.LONG


def _bp(symbol, price, qty=1.0):
    return BrokerPosition(symbol=symbol, direction=Direction.LONG, quantity=qty, avg_entry_price=price)


def test_match_within_tolerance():
    report = reconcile([Held("AAPL", 100.0)], None, [_bp("AAPL", 100.4)])
    assert report.matches == 1
    assert report.mismatches == 0
    assert report.connection == CONNECTION_OK


def test_entry_price_diff():
    report = reconcile([Held("AAPL", 100.0)], None, [_bp("AAPL", 101.0)])
    assert report.mismatches == 1
    detail = report.details[0]
    assert detail["type"] == ENTRY_PRICE_DIFF
    assert detail["diff_pct"] == pytest.approx(1.0)
    assert detail["broker_entry_price"] == 101.0


def test_missing_and_extra():
    report = reconcile([Held("AAPL", 100.0)], None, [_bp("MSFT", 300.0)])
    assert report.mismatches == 2
    assert [d["type"] for d in report.details] == [MISSING_POSITION, EXTRA_POSITION]
    assert report.details[0]["symbol"] == "AAPL"
    assert report.details[1]["symbol"] == "MSFT"


def test_pending_order_is_not_missing():
    report = reconcile([Held("AAPL", 100.0)], None, [], broker_orders=[{"symbol": "AAPL", "status": "new"}])
    assert report.matches == 1
    assert report.mismatches == 0


def test_multiple_strategies_compare_weighted_entry():
    held = [Held("AAPL", 100.0, 1.0), Held("AAPL", 104.0, 3.0)]
    report = reconcile(held, None, [_bp("AAPL", 103.0, 4.0)])
    assert report.matches == 1


def test_custom_tolerance():
    report = reconcile([Held("AAPL", 100.0)], None, [_bp("AAPL", 101.0)], tolerance_pct=2.0)
    assert report.matches == 1


def _session_with_position(store, broker):
    provider = FakeProvider({"TEST": uptrend_with_dip().iloc[:81]})
    manager = LiveSessionManager(store, BarCache(provider))
    manager.save_config(1, "hybrid_ai_trend", ["TEST"], "1h", SAMPLE_PARAMS)
    sid = manager.start(1, started_at=EPOCH)["id"]
    manager.tick(sid)
    return manager, sid


def test_monitor_matches_session_positions(store):
    broker = FakeBroker(positions=[_bp("TEST", 112.1, 8.9)])
    manager, sid = _session_with_position(store, broker)
    report = BrokerMonitor(store, broker).check(sid)
    assert report.connection == CONNECTION_OK
    assert report.matches == 1
    assert report.account["account_id"] == "test-account"
    session = manager.session_detail(sid)["session"]
    assert session["alpaca_active"] is True
    assert session["alpaca_checked_at"] is not None


def test_monitor_unreachable_is_lost_not_empty(store):
    broker = FakeBroker(unreachable=True)
    manager, sid = _session_with_position(store, broker)
    report = BrokerMonitor(store, broker).check(sid)
    assert report.connection == CONNECTION_LOST
    assert report.details == []
    assert report.mismatches == 0
    session = manager.session_detail(sid)["session"]
    assert session["alpaca_active"] is False
    assert "ConnectionError" in session["alpaca_last_error"]
    lost = [e for e in manager.logs_after(sid) if "connection lost" in e["message"]]
    assert len(lost) == 1
    # repeated failures do not repeat the log
    BrokerMonitor(store, broker).check(sid)
    lost = [e for e in manager.logs_after(sid) if "connection lost" in e["message"]]
    assert len(lost) == 1


def test_monitor_without_broker(store):
    manager, sid = _session_with_position(store, None)
    report = BrokerMonitor(store, None).check(sid)
    assert report.connection == CONNECTION_DISABLED


def test_monitor_unknown_session(store):
    with pytest.raises(NotFoundError):
        BrokerMonitor(store, FakeBroker()).check(99)
