"""Unit tests for risk.manager."""

import pytest
from trading_engine.core.types import Direction
from trading_engine.risk.manager import RiskManager


def test_validate_signal_zero_stop_distance():
    rm = RiskManager(trade_amount=1000.0, min_risk_reward=1.0)
    r = rm.validate_signal(100.0, 100.0, 102.0, Direction.LONG)
    assert r.allowed is False
    assert "zero" in r.reason.lower()


def test_validate_signal_quantity():
    rm = RiskManager(trade_amount=1000.0, min_risk_reward=0.5)
    # 1000 / 100 = 10 shares
    r = rm.validate_signal(100.0, 98.0, 104.0, Direction.LONG)
    assert r.allowed is True
    assert r.quantity == 10.0


def test_validate_signal_fractional_and_whole():
    r = RiskManager(trade_amount=1000.0).validate_signal(300.0, 290.0, 320.0, Direction.LONG)
    assert r.quantity == pytest.approx(3.333333)
    r = RiskManager(trade_amount=1000.0, fractionable=False).validate_signal(300.0, 290.0, 320.0, Direction.LONG)
    assert r.quantity == 3.0


def test_validate_signal_trade_amount_override():
    r = RiskManager(trade_amount=1000.0).validate_signal(50.0, 45.0, 60.0, Direction.LONG, trade_amount=500.0)
    assert r.quantity == 10.0


def test_validate_signal_wrong_side():
    rm = RiskManager()
    assert rm.validate_signal(100.0, 101.0, 110.0, Direction.LONG).allowed is False
    assert rm.validate_signal(100.0, 99.0, 90.0, Direction.SHORT).allowed is False
    assert rm.validate_signal(100.0, 101.0, 90.0, Direction.SHORT).allowed is True


def test_validate_signal_min_risk_reward():
    rm = RiskManager(min_risk_reward=2.0)
    r = rm.validate_signal(100.0, 98.0, 103.0, Direction.LONG)
    assert r.allowed is False
    assert "risk_reward" in r.reason


def test_validate_signal_min_notional():
    rm = RiskManager(trade_amount=1000.0, min_notional=5.0, fractionable=False)
    # 1000 / 2000 floors to 0 shares
    r = rm.validate_signal(2000.0, 1900.0, 2200.0, Direction.LONG)
    assert r.allowed is False


def test_risk_reward_ratio():
    assert RiskManager.risk_reward_ratio(100.0, 98.0, 104.0) == pytest.approx(2.0)
    assert RiskManager.risk_reward_ratio(100.0, 100.0, 104.0) == 0.0
