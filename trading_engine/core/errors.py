"""
Engine error taxonomy. Every error carries a stable machine-readable reason
plus an optional human-readable detail.
"""

from __future__ import annotations
from typing import Optional


class EngineError(Exception):
    reason = "engine_error"

    def __init__(self, detail: str = "", reason: Optional[str] = None):
        super().__init__(detail or self.reason)
        if reason:
            self.reason = reason
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.reason, "detail": self.detail}


class DataUnavailableError(EngineError):
    """No bars for symbol/interval. Never fatal to a batch."""
    reason = "data_unavailable"

    def __init__(self, symbol: str, interval: str = "", detail: str = ""):
        super().__init__(detail or f"no bars for {symbol} {interval}".strip())
        self.symbol = symbol
        self.interval = interval


class InvalidParameterError(EngineError):
    reason = "invalid_parameter"

    def __init__(self, key: str, detail: str = ""):
        super().__init__(f"{key}: {detail}" if detail else key)
        self.key = key

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["key"] = self.key
        return data


class UnknownStrategyError(EngineError):
    reason = "unknown_strategy"


class BrokerUnreachableError(EngineError):
    reason = "broker_unreachable"


class BrokerRejectedError(EngineError):
    """The broker answered but refused the request (4xx other than 401)."""
    reason = "broker_rejected"

    def __init__(self, detail: str = "", status: Optional[int] = None):
        super().__init__(detail)
        self.status = status


class ConcurrentMutationError(EngineError):
    """Mutation attempted on an active session."""
    reason = "concurrent_mutation"


class ResumeRejectedError(EngineError):
    """Session configuration changed since the session stopped."""
    reason = "resume_rejected"


class NotFoundError(EngineError):
    reason = "not_found"


class ConfigMissingError(EngineError):
    reason = "config_missing"
