"""Core: config, types, errors, logging."""

from trading_engine.core.config import load_config, Config
from trading_engine.core.types import (
    Bar,
    CloseReason,
    Direction,
    Signal,
    SignalKind,
    Trade,
    return_pct,
)
from trading_engine.core.errors import (
    EngineError,
    DataUnavailableError,
    InvalidParameterError,
    UnknownStrategyError,
    BrokerUnreachableError,
    BrokerRejectedError,
    ConcurrentMutationError,
    ResumeRejectedError,
    NotFoundError,
    ConfigMissingError,
)
from trading_engine.core.logger import setup_logging

__all__ = [
    "load_config",
    "Config",
    "Bar",
    "CloseReason",
    "Direction",
    "Signal",
    "SignalKind",
    "Trade",
    "return_pct",
    "EngineError",
    "DataUnavailableError",
    "InvalidParameterError",
    "UnknownStrategyError",
    "BrokerUnreachableError",
    "BrokerRejectedError",
    "ConcurrentMutationError",
    "ResumeRejectedError",
    "NotFoundError",
    "ConfigMissingError",
    "setup_logging",
]
