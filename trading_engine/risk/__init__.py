"""Risk management: fixed-amount sizing and level checks."""

from trading_engine.risk.manager import RiskManager, RiskResult

__all__ = ["RiskManager", "RiskResult"]
