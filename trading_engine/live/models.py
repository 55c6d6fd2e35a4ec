"""
Database models for live trading sessions.
SQLAlchemy ORM models (SQLite by default).
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text, TypeDecorator, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from trading_engine.core.types import CloseReason, Direction

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns tz-aware UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class StrategyConfig(Base):
    """Saved live configuration, one per user."""
    __tablename__ = "strategy_configs"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, unique=True, index=True)
    strategy = Column(String(50), nullable=False)
    interval = Column(String(10), nullable=False, default="1h")
    params = Column(JSON, nullable=False, default=dict)
    symbols = Column(JSON, nullable=False, default=list)
    long_only = Column(Boolean, default=False)
    trade_amount = Column(Float, default=1000.0)
    alpaca_enabled = Column(Boolean, default=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "strategy": self.strategy,
            "interval": self.interval,
            "params": self.params or {},
            "symbols": self.symbols or [],
            "long_only": bool(self.long_only),
            "trade_amount": self.trade_amount,
            "alpaca_enabled": bool(self.alpaca_enabled),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<StrategyConfig(user={self.user_id}, strategy={self.strategy})>"


class LiveSession(Base):
    __tablename__ = "live_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False, index=True)
    config_id = Column(Integer, ForeignKey("strategy_configs.id"), nullable=False)
    name = Column(String(100), default="")
    interval = Column(String(10), nullable=False)
    symbols = Column(JSON, nullable=False, default=list)
    trade_amount = Column(Float, default=1000.0)
    mode = Column(String(10), default="poll")  # poll | stream
    is_active = Column(Boolean, default=False, index=True)
    started_at = Column(UTCDateTime)
    stopped_at = Column(UTCDateTime)
    last_poll_at = Column(UTCDateTime)
    total_polls = Column(Integer, default=0)
    config_hash = Column(String(64))
    strategies_hash = Column(String(64))
    alpaca_enabled = Column(Boolean, default=False)
    alpaca_active = Column(Boolean)
    alpaca_last_error = Column(Text)
    alpaca_checked_at = Column(UTCDateTime)

    strategies = relationship("SessionStrategy", back_populates="session", order_by="SessionStrategy.id")

    def __repr__(self):
        return f"<LiveSession(id={self.id}, active={self.is_active})>"


class SessionStrategy(Base):
    """One strategy running inside a session."""
    __tablename__ = "session_strategies"
    __table_args__ = (UniqueConstraint("session_id", "name", name="uq_session_strategy_name"),)

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    params = Column(JSON, nullable=False, default=dict)
    symbols = Column(JSON, nullable=False, default=list)
    long_only = Column(Boolean, default=False)
    is_enabled = Column(Boolean, default=True)
    created_at = Column(UTCDateTime, default=utcnow)

    session = relationship("LiveSession", back_populates="strategies")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "name": self.name,
            "params": self.params or {},
            "symbols": self.symbols or [],
            "long_only": bool(self.long_only),
            "is_enabled": bool(self.is_enabled),
        }


class Position(Base):
    """Persisted live position, owned by (session, strategy, symbol)."""
    __tablename__ = "live_positions"

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id"), nullable=False, index=True)
    strategy_id = Column(Integer, ForeignKey("session_strategies.id"), nullable=False, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    direction = Column(Enum(Direction, native_enum=False, length=5), nullable=False)
    entry_price = Column(Float, nullable=False)
    entry_time = Column(UTCDateTime, nullable=False)
    signal_time = Column(UTCDateTime)
    signal_price = Column(Float)
    quantity = Column(Float, nullable=False)
    invested_amount = Column(Float, nullable=False)
    stop_loss = Column(Float)
    take_profit = Column(Float)
    current_stop = Column(Float)
    current_price = Column(Float)
    is_closed = Column(Boolean, default=False, index=True)
    close_price = Column(Float)
    close_time = Column(UTCDateTime)
    close_reason = Column(Enum(CloseReason, native_enum=False, length=10))
    profit_loss_pct = Column(Float, default=0.0)
    profit_loss_amt = Column(Float, default=0.0)
    alpaca_order_id = Column(String(64))
    # broker action not yet acknowledged: open | close
    broker_pending = Column(String(10))
    last_checked_time = Column(UTCDateTime)

    @property
    def is_open(self) -> bool:
        return not self.is_closed

    def to_dict(self, strategy_name: str = "") -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "strategy_id": self.strategy_id,
            "strategy": strategy_name,
            "symbol": self.symbol,
            "direction": self.direction.value,
            "entry_price": self.entry_price,
            "entry_time": self.entry_time.isoformat() if self.entry_time else None,
            "signal_time": self.signal_time.isoformat() if self.signal_time else None,
            "quantity": self.quantity,
            "invested_amount": self.invested_amount,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "current_stop": self.current_stop,
            "current_price": self.current_price,
            "is_open": not self.is_closed,
            "close_price": self.close_price,
            "close_time": self.close_time.isoformat() if self.close_time else None,
            "close_reason": self.close_reason.value if self.close_reason else None,
            "profit_loss_pct": self.profit_loss_pct,
            "profit_loss_amt": self.profit_loss_amt,
            "alpaca_order_id": self.alpaca_order_id,
            "broker_pending": self.broker_pending,
            "last_checked_time": self.last_checked_time.isoformat() if self.last_checked_time else None,
        }


class LogEvent(Base):
    """Append-only session event log; ids are strictly increasing."""
    __tablename__ = "live_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id"), nullable=False, index=True)
    strategy_id = Column(Integer)
    level = Column(String(10), nullable=False)
    symbol = Column(String(20), default="")
    message = Column(Text, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "strategy_id": self.strategy_id,
            "level": self.level,
            "symbol": self.symbol,
            "message": self.message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class SymbolCursor(Base):
    """Last processed bar per (session, strategy, symbol), plus a deferred next-open entry."""
    __tablename__ = "symbol_cursors"
    __table_args__ = (UniqueConstraint("session_id", "strategy_id", "symbol", name="uq_cursor"),)

    id = Column(Integer, primary_key=True)
    session_id = Column(Integer, ForeignKey("live_sessions.id"), nullable=False)
    strategy_id = Column(Integer, ForeignKey("session_strategies.id"), nullable=False)
    symbol = Column(String(20), nullable=False)
    last_bar_time = Column(UTCDateTime)
    pending_signal = Column(JSON)
