"""
Live trading sessions: STOPPED -> RUNNING -> STOPPED, RUNNING again via resume.

A tick evaluates every enabled strategy of a session on each of its symbols and
replays the bars after the (session, strategy, symbol) cursor through the same
lifecycle step the backtest uses, against persisted positions. Every transition
is written to the session log. Ticks of one session are serialized; different
sessions tick concurrently. Bars and broker calls happen outside the store lock.
"""

from __future__ import annotations
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import pandas as pd
import requests
from sqlalchemy.exc import SQLAlchemyError

from trading_engine.analytics.metrics import compute_metrics
from trading_engine.backtesting.lifecycle import BarView, PositionLifecycle
from trading_engine.core.errors import (
    BrokerUnreachableError,
    ConcurrentMutationError,
    ConfigMissingError,
    DataUnavailableError,
    EngineError,
    InvalidParameterError,
    NotFoundError,
    ResumeRejectedError,
)
from trading_engine.core.types import Bar, CloseReason, Direction, Signal, Trade, return_pct
from trading_engine.data.bars import bars_to_frame, drop_forming_bar, merge_bars
from trading_engine.data.cache import BarCache
from trading_engine.execution.base import BrokerClient, OrderResult
from trading_engine.live.models import (
    LiveSession,
    LogEvent,
    Position,
    SessionStrategy,
    StrategyConfig,
    SymbolCursor,
)
from trading_engine.live.store import Store
from trading_engine.risk.manager import RiskManager
from trading_engine.strategies.base import StrategyEvaluation
from trading_engine.strategies.registry import create_strategy
from trading_engine.utils.markets import is_us_market_open
from trading_engine.utils.timeframes import normalize_interval, timeframe_minutes

logger = logging.getLogger("trading_engine.live.session")

# Session log levels
OPEN = "OPEN"
CLOSE = "CLOSE"
SL = "SL"
TP = "TP"
SIGNAL = "SIGNAL"
SCAN = "SCAN"
SKIP = "SKIP"
ERROR = "ERROR"
INFO = "INFO"
TRAIL = "TRAIL"

_CLOSE_LEVELS = {CloseReason.SL: SL, CloseReason.TP: TP}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def config_hash(config: StrategyConfig) -> str:
    """sha256 over the canonical JSON of everything that shapes a session's trading."""
    canonical = json.dumps(
        {
            "strategy": config.strategy,
            "interval": config.interval,
            "params": config.params or {},
            "symbols": list(config.symbols or []),
            "long_only": bool(config.long_only),
            "trade_amount": float(config.trade_amount or 0.0),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def strategies_hash(strategies: Sequence[SessionStrategy]) -> str:
    """sha256 over the trading rules of a session's strategies. Enabling or disabling is not a rule change."""
    rules = sorted(
        (
            {
                "name": s.name,
                "params": s.params or {},
                "symbols": list(s.symbols or []),
                "long_only": bool(s.long_only),
            }
            for s in strategies
        ),
        key=lambda r: r["name"],
    )
    canonical = json.dumps(rules, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def clean_symbols(symbols: Optional[Sequence[str]]) -> List[str]:
    out: List[str] = []
    for s in symbols or []:
        s = str(s).strip().upper()
        if s and s not in out:
            out.append(s)
    return out


def _check_interval(interval: str) -> str:
    interval = normalize_interval(interval)
    try:
        timeframe_minutes(interval)
    except ValueError:
        raise InvalidParameterError("interval", f"unsupported interval {interval!r}") from None
    return interval


def position_trade(pos: Position, strategy_name: str = "") -> Trade:
    """Live position as a Trade, for metrics."""
    return Trade(
        symbol=pos.symbol,
        direction=pos.direction,
        entry_time=pos.entry_time,
        entry_price=pos.entry_price,
        quantity=pos.quantity,
        stop_loss=pos.stop_loss or 0.0,
        take_profit=pos.take_profit or 0.0,
        current_stop=pos.current_stop or 0.0,
        exit_time=pos.close_time,
        exit_price=pos.close_price,
        close_reason=pos.close_reason,
        return_pct=pos.profit_loss_pct or 0.0,
        current_price=pos.current_price,
        is_open=not pos.is_closed,
        strategy=strategy_name,
    )


@dataclass
class BrokerAction:
    """A position's pending broker order, relayed after the store scope is closed."""
    kind: str  # open | close
    position_id: int
    symbol: str
    direction: Direction
    quantity: float = 0.0
    entry_price: float = 0.0
    stop_loss: float = 0.0
    take_profit: float = 0.0


@dataclass
class _StrategyRun:
    id: int
    name: str
    params: dict
    symbols: List[str]
    long_only: bool


class _PositionBook:
    """PositionBook over the persisted positions of one (session, strategy, symbol)."""

    def __init__(
        self,
        db,
        session_id: int,
        strategy_id: int,
        symbol: str,
        risk_manager: RiskManager,
        trade_amount: float,
        relay_after: Optional[datetime] = None,
    ):
        self.db = db
        self.session_id = session_id
        self.strategy_id = strategy_id
        self.symbol = symbol
        self.risk_manager = risk_manager
        self.trade_amount = trade_amount
        # opens on bars at or after this time go to the broker
        self.relay_after = relay_after
        self.transitions = 0
        self._open: Optional[Position] = (
            db.query(Position)
            .filter(
                Position.session_id == session_id,
                Position.strategy_id == strategy_id,
                Position.symbol == symbol,
                Position.is_closed.is_(False),
            )
            .order_by(Position.id.desc())
            .first()
        )

    def log(self, level: str, message: str) -> None:
        self.db.add(LogEvent(
            session_id=self.session_id,
            strategy_id=self.strategy_id,
            level=level,
            symbol=self.symbol,
            message=message,
            created_at=utcnow(),
        ))
        self.db.flush()

    def _relay(self, time: datetime) -> bool:
        return self.relay_after is not None and time >= self.relay_after

    def current(self) -> Optional[Position]:
        return self._open

    def open(self, direction, price, stop_loss, take_profit, time, signal: Signal) -> bool:
        dup = (
            self.db.query(Position.id)
            .filter(
                Position.session_id == self.session_id,
                Position.strategy_id == self.strategy_id,
                Position.symbol == self.symbol,
                Position.signal_time == signal.time,
            )
            .first()
        )
        if dup is not None:
            return False
        check = self.risk_manager.validate_signal(price, stop_loss, take_profit, direction, self.trade_amount)
        if not check.allowed:
            self.log(SKIP, f"{direction.value} entry rejected: {check.reason}")
            return False
        pos = Position(
            session_id=self.session_id,
            strategy_id=self.strategy_id,
            symbol=self.symbol,
            direction=direction,
            entry_price=price,
            entry_time=time,
            signal_time=signal.time,
            signal_price=signal.price,
            quantity=check.quantity,
            invested_amount=check.quantity * price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            current_stop=stop_loss,
            current_price=price,
            is_closed=False,
            profit_loss_pct=0.0,
            profit_loss_amt=0.0,
            alpaca_order_id="",
            last_checked_time=time,
        )
        self.db.add(pos)
        self.db.flush()
        self._open = pos
        self.transitions += 1
        self.log(
            OPEN,
            f"{direction.value} {check.quantity:g} @ {price:.4f} SL {stop_loss:.4f} TP {take_profit:.4f} ({signal.reason})",
        )
        if self._relay(time):
            pos.broker_pending = "open"
        return True

    def close(self, price: float, time: datetime, reason: CloseReason, note: str = "") -> None:
        pos = self._open
        if pos is None:
            return
        pct = return_pct(pos.direction, pos.entry_price, price)
        pos.is_closed = True
        pos.close_price = price
        pos.close_time = time
        pos.close_reason = reason
        pos.current_price = price
        pos.profit_loss_pct = pct
        pos.profit_loss_amt = pos.invested_amount * pct / 100.0
        pos.last_checked_time = time
        self._open = None
        self.transitions += 1
        suffix = f": {note}" if note else ""
        self.log(
            _CLOSE_LEVELS.get(reason, CLOSE),
            f"{pos.direction.value} closed @ {price:.4f} [{reason.value}{suffix}] P/L {pct:+.2f}%",
        )
        # the broker holds this position whatever the bar's age; an unsent open is simply dropped
        if pos.alpaca_order_id:
            pos.broker_pending = "close"
        elif pos.broker_pending == "open":
            pos.broker_pending = None

    def trail(self, new_stop: float, time: datetime) -> None:
        pos = self._open
        if pos is None:
            return
        old = pos.current_stop or 0.0
        pos.current_stop = new_stop
        self.log(TRAIL, f"stop {old:.4f} -> {new_stop:.4f}")

    def mark(self, price: float, time: datetime) -> None:
        pos = self._open
        if pos is None:
            return
        pos.current_price = price
        pos.profit_loss_pct = return_pct(pos.direction, pos.entry_price, price)
        pos.profit_loss_amt = pos.invested_amount * pos.profit_loss_pct / 100.0
        pos.last_checked_time = time


class LiveSessionManager:
    """
    Owns session lifecycle and ticking. The tick locks live in a map keyed by
    session id; scheduling threads are the SessionScheduler's concern.
    """

    def __init__(
        self,
        store: Store,
        cache: BarCache,
        risk_manager: Optional[RiskManager] = None,
        broker: Optional[BrokerClient] = None,
        entry_on_next_open: bool = False,
        market_hours_only: bool = False,
        count_open_as_wins: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.risk_manager = risk_manager or RiskManager()
        self.broker = broker
        self.lifecycle = PositionLifecycle(entry_on_next_open=entry_on_next_open)
        self.market_hours_only = market_hours_only
        self.count_open_as_wins = count_open_as_wins
        self.clock = clock
        self._tick_locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _tick_lock(self, session_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._tick_locks.get(session_id)
            if lock is None:
                lock = self._tick_locks[session_id] = threading.Lock()
            return lock

    # Configuration

    def save_config(
        self,
        user_id: int,
        strategy: str,
        symbols: Sequence[str],
        interval: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        long_only: bool = False,
        trade_amount: float = 1000.0,
        alpaca_enabled: bool = False,
    ) -> dict:
        """Validate and upsert the user's live configuration."""
        instance = create_strategy(strategy, params)
        interval = _check_interval(interval or instance.default_interval)
        symbols = clean_symbols(symbols)
        if not symbols:
            raise InvalidParameterError("symbols", "at least one symbol required")
        if trade_amount is None or trade_amount <= 0:
            raise InvalidParameterError("trade_amount", "must be positive")
        with self.store.scope() as db:
            config = db.query(StrategyConfig).filter(StrategyConfig.user_id == user_id).first()
            if config is None:
                config = StrategyConfig(user_id=user_id)
                db.add(config)
            config.strategy = instance.name
            config.interval = interval
            config.params = dict(instance.params)
            config.symbols = symbols
            config.long_only = bool(long_only)
            config.trade_amount = float(trade_amount)
            config.alpaca_enabled = bool(alpaca_enabled)
            db.flush()
            logger.info("Saved live config for user %d: %s %s, %d symbols", user_id, strategy, interval, len(symbols))
            return config.to_dict()

    def get_config(self, user_id: int) -> dict:
        with self.store.scope() as db:
            config = db.query(StrategyConfig).filter(StrategyConfig.user_id == user_id).first()
            if config is None:
                raise NotFoundError(f"no live configuration for user {user_id}")
            return config.to_dict()

    # Lifecycle

    def start(
        self,
        user_id: int,
        name: str = "",
        mode: str = "poll",
        started_at: Optional[datetime] = None,
    ) -> dict:
        """
        Start a session from the saved configuration. Bars opening before started_at
        are never traded; an earlier started_at replays history since then.
        """
        if mode not in ("poll", "stream"):
            raise InvalidParameterError("mode", "must be 'poll' or 'stream'")
        with self.store.scope() as db:
            config = db.query(StrategyConfig).filter(StrategyConfig.user_id == user_id).first()
            if config is None:
                raise ConfigMissingError("save a live configuration before starting a session")
            active = (
                db.query(LiveSession)
                .filter(
                    LiveSession.user_id == user_id,
                    LiveSession.config_id == config.id,
                    LiveSession.is_active.is_(True),
                )
                .first()
            )
            if active is not None:
                raise ConcurrentMutationError(f"session {active.id} is already active")
            session = LiveSession(
                user_id=user_id,
                config_id=config.id,
                name=name or f"{config.strategy} {config.interval}",
                interval=config.interval,
                symbols=list(config.symbols),
                trade_amount=config.trade_amount,
                mode=mode,
                is_active=True,
                started_at=started_at or self.clock(),
                total_polls=0,
                config_hash=config_hash(config),
                alpaca_enabled=bool(config.alpaca_enabled) and self.broker is not None,
            )
            db.add(session)
            db.flush()
            session.strategies.append(SessionStrategy(
                name=config.strategy,
                params=dict(config.params),
                symbols=list(config.symbols),
                long_only=bool(config.long_only),
                is_enabled=True,
            ))
            session.strategies_hash = strategies_hash(session.strategies)
            db.add(LogEvent(
                session_id=session.id, level=INFO, symbol="",
                message=f"Session started: {config.strategy} {config.interval}, {len(config.symbols)} symbols",
            ))
            db.flush()
            logger.info("Session %d started for user %d", session.id, user_id)
            return self._session_dict(db, session)

    def stop(self, session_id: int) -> dict:
        """Halt ticking. Open positions stay open and keep their ids."""
        with self._tick_lock(session_id):
            with self.store.scope() as db:
                session = self._get_session(db, session_id)
                if session.is_active:
                    session.is_active = False
                    session.stopped_at = self.clock()
                    open_count = self._open_count(db, session_id)
                    db.add(LogEvent(
                        session_id=session_id, level=INFO, symbol="",
                        message=f"Session stopped, {open_count} positions left open",
                    ))
                    logger.info("Session %d stopped", session_id)
                db.flush()
                return self._session_dict(db, session)

    def resume(self, session_id: int) -> dict:
        with self._tick_lock(session_id):
            with self.store.scope() as db:
                session = self._get_session(db, session_id)
                if session.is_active:
                    raise ConcurrentMutationError(f"session {session_id} is already active")
                if not self._can_resume(db, session):
                    raise ResumeRejectedError("configuration changed since the session stopped")
                other = (
                    db.query(LiveSession)
                    .filter(
                        LiveSession.user_id == session.user_id,
                        LiveSession.config_id == session.config_id,
                        LiveSession.is_active.is_(True),
                    )
                    .first()
                )
                if other is not None:
                    raise ConcurrentMutationError(f"session {other.id} is already active")
                session.is_active = True
                session.stopped_at = None
                db.add(LogEvent(
                    session_id=session_id, level=INFO, symbol="",
                    message=f"Session resumed with {self._open_count(db, session_id)} open positions",
                ))
                db.flush()
                logger.info("Session %d resumed", session_id)
                return self._session_dict(db, session)

    def delete_session(self, session_id: int) -> dict:
        """Remove a stopped session with its strategies, positions, cursors and log."""
        with self._tick_lock(session_id):
            with self.store.scope() as db:
                session = self._get_session(db, session_id)
                if session.is_active:
                    raise ConcurrentMutationError(f"stop session {session_id} before deleting it")
                open_count = self._open_count(db, session_id)
                for model in (LogEvent, SymbolCursor, Position, SessionStrategy):
                    db.query(model).filter(model.session_id == session_id).delete(synchronize_session=False)
                db.delete(session)
        with self._locks_guard:
            self._tick_locks.pop(session_id, None)
        if open_count:
            logger.warning("Session %d deleted with %d open positions", session_id, open_count)
        else:
            logger.info("Session %d deleted", session_id)
        return {"deleted": True, "id": session_id}

    def active_session_ids(self) -> List[int]:
        with self.store.scope() as db:
            rows = db.query(LiveSession.id).filter(LiveSession.is_active.is_(True)).order_by(LiveSession.id).all()
            return [r[0] for r in rows]

    def session_interval(self, session_id: int) -> str:
        with self.store.scope() as db:
            return self._get_session(db, session_id).interval

    # Strategies within a session

    def add_strategy(
        self,
        session_id: int,
        name: str,
        params: Optional[Mapping[str, Any]] = None,
        symbols: Optional[Sequence[str]] = None,
        long_only: bool = False,
    ) -> dict:
        """
        Add a strategy to a session. It starts disabled; its symbols are merged into
        the session's. A new strategy leaves the rules of open positions alone, so it
        does not by itself block a resume.
        """
        instance = create_strategy(name, params)
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            exists = (
                db.query(SessionStrategy.id)
                .filter(SessionStrategy.session_id == session_id, SessionStrategy.name == instance.name)
                .first()
            )
            if exists is not None:
                raise InvalidParameterError("name", f"strategy {instance.name} already in session {session_id}")
            rules_intact = strategies_hash(session.strategies) == session.strategies_hash
            strategy = SessionStrategy(
                name=instance.name,
                params=dict(instance.params),
                symbols=clean_symbols(symbols) or list(session.symbols),
                long_only=bool(long_only),
                is_enabled=False,
            )
            session.strategies.append(strategy)
            session.symbols = clean_symbols(list(session.symbols or []) + strategy.symbols)
            if rules_intact:
                session.strategies_hash = strategies_hash(session.strategies)
            db.flush()
            db.add(LogEvent(
                session_id=session_id, strategy_id=strategy.id, level=INFO, symbol="",
                message=f"Strategy {instance.name} added (disabled)",
            ))
            return strategy.to_dict()

    def update_strategy(
        self,
        session_id: int,
        strategy_id: int,
        is_enabled: Optional[bool] = None,
        params: Optional[Mapping[str, Any]] = None,
        symbols: Optional[Sequence[str]] = None,
        long_only: Optional[bool] = None,
    ) -> dict:
        """
        Change a strategy. Only while the session is stopped; nothing changes on error.
        Changing params, symbols or long_only means the session can no longer resume.
        """
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            if session.is_active:
                raise ConcurrentMutationError(f"stop session {session_id} before changing its strategies")
            strategy = db.get(SessionStrategy, strategy_id)
            if strategy is None or strategy.session_id != session_id:
                raise NotFoundError(f"strategy {strategy_id} not found in session {session_id}")
            new_params = dict(create_strategy(strategy.name, params).params) if params is not None else None
            new_symbols = clean_symbols(symbols) if symbols is not None else None
            if new_symbols is not None and not new_symbols:
                raise InvalidParameterError("symbols", "at least one symbol required")

            changes = []
            if new_params is not None:
                strategy.params = new_params
                changes.append("params")
            if new_symbols is not None:
                strategy.symbols = new_symbols
                changes.append("symbols")
            if long_only is not None:
                strategy.long_only = bool(long_only)
                changes.append("long_only")
            if is_enabled is not None:
                strategy.is_enabled = bool(is_enabled)
                changes.append("enabled" if is_enabled else "disabled")
            if changes:
                db.add(LogEvent(
                    session_id=session_id, strategy_id=strategy_id, level=INFO, symbol="",
                    message=f"Strategy {strategy.name} updated: {', '.join(changes)}",
                ))
            db.flush()
            return strategy.to_dict()

    def toggle_strategy(self, session_id: int, strategy_id: int, enabled: bool) -> dict:
        return self.update_strategy(session_id, strategy_id, is_enabled=enabled)

    # Ticking

    def tick(
        self,
        session_id: int,
        now: Optional[datetime] = None,
        symbols: Optional[Sequence[str]] = None,
        fetch: bool = True,
    ) -> int:
        """
        One evaluation pass. Returns the number of position transitions (opens + closes).
        Per-symbol failures are logged as ERROR and retried on the next tick. Bars are
        fetched before the session's tick lock is taken, so stop, resume and manual
        closes never wait on the data provider.
        """
        now = now or self.clock()
        if self.market_hours_only and not is_us_market_open(now):
            logger.debug("Session %d: market closed, tick skipped", session_id)
            return 0
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            if not session.is_active or session.started_at is None:
                return 0
            interval = session.interval
            runs = self._strategy_runs(session, symbols)
        frames = self._load_frames(session_id, runs, interval, now, fetch)

        with self._tick_lock(session_id):
            with self.store.scope() as db:
                session = self._get_session(db, session_id)
                if not session.is_active or session.started_at is None:
                    return 0
                session.total_polls = (session.total_polls or 0) + 1
                session.last_poll_at = now
                trade_amount = session.trade_amount
                started_at = session.started_at
                relay = bool(session.alpaca_enabled) and self.broker is not None
                runs = self._strategy_runs(session, symbols)
            if relay:
                # orders earlier ticks could not deliver
                self._flush_broker(session_id)

            transitions = 0
            for run in runs:
                try:
                    strategy = create_strategy(run.name, run.params)
                except EngineError as e:
                    self._log(session_id, ERROR, f"{run.name}: {e.detail or e.reason}", strategy_id=run.id)
                    continue
                scanned = 0
                for symbol in run.symbols:
                    df = frames.get(symbol)
                    if df is None:
                        continue
                    evaluation = strategy.evaluate(df, long_only=run.long_only)
                    try:
                        with self.store.scope() as db:
                            book = self._replay(db, session_id, run.id, symbol, df, evaluation, trade_amount,
                                                started_at, now, relay)
                    except SQLAlchemyError as e:
                        logger.error("Session %d %s %s: persist failed: %s", session_id, run.name, symbol, e)
                        self._log(session_id, ERROR, f"persist failed: {type(e).__name__}", symbol, run.id)
                        continue
                    transitions += book.transitions
                    scanned += 1
                self._log(session_id, SCAN, f"{run.name}: {scanned}/{len(run.symbols)} symbols scanned",
                          strategy_id=run.id)
            if relay:
                self._flush_broker(session_id)
            return transitions

    @staticmethod
    def _strategy_runs(session: LiveSession, symbols: Optional[Sequence[str]] = None) -> List[_StrategyRun]:
        runs = [
            _StrategyRun(s.id, s.name, dict(s.params or {}), list(s.symbols or session.symbols), bool(s.long_only))
            for s in session.strategies
            if s.is_enabled
        ]
        if symbols is not None:
            wanted = set(clean_symbols(symbols))
            for run in runs:
                run.symbols = [s for s in run.symbols if s in wanted]
        return runs

    def on_bar(self, session_id: int, symbol: str, bar: Bar, now: Optional[datetime] = None) -> int:
        """Streaming mode: merge one closed bar into the cache and tick that symbol."""
        symbol = symbol.strip().upper()
        interval = self.session_interval(session_id)
        current = self.cache.peek(symbol, interval)
        self.cache.put(symbol, interval, merge_bars(current, bars_to_frame([bar])))
        return self.tick(session_id, now=now, symbols=[symbol], fetch=False)

    def _load_frames(
        self, session_id: int, runs: List[_StrategyRun], interval: str, now: datetime, fetch: bool
    ) -> Dict[str, pd.DataFrame]:
        frames: Dict[str, pd.DataFrame] = {}
        for run in runs:
            for symbol in run.symbols:
                if symbol in frames:
                    continue
                try:
                    if not fetch:
                        df = self.cache.peek(symbol, interval)
                        if df is None:
                            raise DataUnavailableError(symbol, interval)
                    elif self.cache.is_cached(symbol, interval):
                        df = self.cache.refresh(symbol, interval)
                    else:
                        df = self.cache.get(symbol, interval)
                    frames[symbol] = drop_forming_bar(df, interval, now)
                except (EngineError, requests.RequestException) as e:
                    detail = e.detail if isinstance(e, EngineError) else type(e).__name__
                    logger.warning("Session %d: bars for %s unavailable: %s", session_id, symbol, detail)
                    self._log(session_id, ERROR, f"bars unavailable: {detail}", symbol)
        return frames

    def _replay(
        self,
        db,
        session_id: int,
        strategy_id: int,
        symbol: str,
        df: pd.DataFrame,
        evaluation: StrategyEvaluation,
        trade_amount: float,
        started_at: datetime,
        now: datetime,
        relay: bool,
    ) -> _PositionBook:
        cursor = (
            db.query(SymbolCursor)
            .filter(
                SymbolCursor.session_id == session_id,
                SymbolCursor.strategy_id == strategy_id,
                SymbolCursor.symbol == symbol,
            )
            .first()
        )
        if cursor is None:
            cursor = SymbolCursor(session_id=session_id, strategy_id=strategy_id, symbol=symbol)
            db.add(cursor)
        last_time = cursor.last_bar_time
        latest = df["time"].iloc[-1].to_pydatetime() if not df.empty else None
        book = _PositionBook(
            db, session_id, strategy_id, symbol, self.risk_manager, trade_amount,
            relay_after=latest if relay else None,
        )
        pending = Signal.from_dict(cursor.pending_signal) if cursor.pending_signal else None
        by_index = evaluation.signals_by_index()
        trail_long = evaluation.trailing_long
        trail_short = evaluation.trailing_short
        for i, row in enumerate(df.itertuples(index=False)):
            t = row.time.to_pydatetime()
            if t < started_at or (last_time is not None and t <= last_time):
                continue
            signals = by_index.get(i, ())
            for s in signals:
                book.log(SIGNAL, f"{s.kind.value} @ {s.price:.4f} ({s.reason})")
            bar = BarView(t, float(row.open), float(row.high), float(row.low), float(row.close))
            pending = self.lifecycle.step(
                book,
                bar,
                signals,
                pending,
                trail_long[i] if trail_long else None,
                trail_short[i] if trail_short else None,
            )
            cursor.last_bar_time = t
        cursor.pending_signal = pending.to_dict() if pending is not None else None
        return book

    def _flush_broker(self, session_id: int) -> int:
        """
        Send every unacknowledged broker action of the session. Actions that fail to
        reach the broker stay pending and go out again on the next call.
        """
        if self.broker is None:
            return 0
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            if not session.alpaca_enabled:
                return 0
            rows = (
                db.query(Position)
                .filter(Position.session_id == session_id, Position.broker_pending.isnot(None))
                .order_by(Position.id)
                .all()
            )
            actions = [
                BrokerAction(
                    p.broker_pending, p.id, p.symbol, p.direction, p.quantity,
                    p.entry_price, p.stop_loss or 0.0, p.take_profit or 0.0,
                )
                for p in rows
            ]
        for action in actions:
            try:
                if action.kind == "open":
                    result = self.broker.place_bracket_order(
                        action.symbol, action.direction, action.quantity,
                        action.stop_loss, action.take_profit, action.entry_price,
                    )
                else:
                    result = self.broker.close_position(action.symbol, action.quantity)
            except BrokerUnreachableError as e:
                result = OrderResult(success=False, message=e.detail)
            self._record_order(session_id, action, result)
        return len(actions)

    def _record_order(self, session_id: int, action: BrokerAction, result: OrderResult) -> None:
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            session.alpaca_checked_at = self.clock()
            pos = db.get(Position, action.position_id)
            label = f"Broker {action.kind} {action.direction.value} {action.quantity:g}"
            if result.success:
                session.alpaca_active = True
                session.alpaca_last_error = None
                if pos is not None:
                    pos.broker_pending = None
                    if action.kind == "open":
                        pos.alpaca_order_id = result.order_id or ""
                db.add(LogEvent(
                    session_id=session_id, level=INFO, symbol=action.symbol,
                    message=f"{label} ok (order {result.order_id or result.message})",
                ))
            elif result.rejected:
                # final: the broker answered, resending the same order would be refused again
                if pos is not None:
                    pos.broker_pending = None
                db.add(LogEvent(
                    session_id=session_id, level=ERROR, symbol=action.symbol,
                    message=f"{label} rejected: {result.message}",
                ))
            else:
                session.alpaca_active = False
                session.alpaca_last_error = result.message
                db.add(LogEvent(
                    session_id=session_id, level=ERROR, symbol=action.symbol,
                    message=f"{label} failed, retrying next tick: {result.message}",
                ))

    def close_position(self, session_id: int, position_id: int, price: Optional[float] = None) -> dict:
        """Manual close at the given price (default: last marked price)."""
        with self._tick_lock(session_id):
            with self.store.scope() as db:
                pos = db.get(Position, position_id)
                if pos is None or pos.session_id != session_id:
                    raise NotFoundError(f"position {position_id} not found in session {session_id}")
                if pos.is_closed:
                    raise InvalidParameterError("position_id", "position already closed")
                book = _PositionBook(db, session_id, pos.strategy_id, pos.symbol, self.risk_manager, 0.0)
                book.close(price if price is not None else pos.current_price, self.clock(), CloseReason.MANUAL)
                result = pos.to_dict()
            if result["broker_pending"] and self._flush_broker(session_id):
                with self.store.scope() as db:
                    result = db.get(Position, position_id).to_dict()
            return result

    # Queries

    def status(self, user_id: int) -> dict:
        with self.store.scope() as db:
            sessions = (
                db.query(LiveSession)
                .filter(LiveSession.user_id == user_id, LiveSession.is_active.is_(True))
                .order_by(LiveSession.id.desc())
                .all()
            )
            active = [self._session_dict(db, s) for s in sessions]
            latest = (
                db.query(LiveSession).filter(LiveSession.user_id == user_id).order_by(LiveSession.id.desc()).first()
            )
            # drives the resume prompt when nothing is running
            last_session = self._session_dict(db, latest) if latest is not None else None
        prices: Dict[str, float] = {}
        for s in active:
            prices.update(self.symbol_prices(s["symbols"], s["interval"]))
        return {
            "is_running": bool(active),
            "active_sessions": active,
            "last_session": last_session,
            "symbol_prices": prices,
        }

    def session_detail(self, session_id: int) -> dict:
        with self.store.scope() as db:
            session = self._get_session(db, session_id)
            names = {s.id: s.name for s in session.strategies}
            positions = (
                db.query(Position).filter(Position.session_id == session_id).order_by(Position.id).all()
            )
            detail = {
                "session": self._session_dict(db, session),
                "positions": [p.to_dict(names.get(p.strategy_id, "")) for p in positions],
                "strategies": [s.to_dict() for s in session.strategies],
            }
            trades = [position_trade(p, names.get(p.strategy_id, "")) for p in positions]
            symbols = set(session.symbols or [])
            for s in session.strategies:
                symbols.update(s.symbols or [])
            interval = session.interval
        detail["metrics"] = compute_metrics(trades, count_open_as_wins=self.count_open_as_wins).to_dict()
        detail["symbol_prices"] = self.symbol_prices(sorted(symbols), interval)
        return detail

    def list_sessions(self, user_id: int) -> List[dict]:
        with self.store.scope() as db:
            sessions = (
                db.query(LiveSession).filter(LiveSession.user_id == user_id).order_by(LiveSession.id.desc()).all()
            )
            return [self._session_dict(db, s) for s in sessions]

    def logs_after(
        self, session_id: int, after_id: int = 0, limit: int = 500, strategy: Optional[str] = None
    ) -> List[dict]:
        """Events with id > after_id, ascending. strategy narrows to one strategy's events, by name."""
        with self.store.scope() as db:
            self._get_session(db, session_id)
            query = db.query(LogEvent).filter(LogEvent.session_id == session_id, LogEvent.id > after_id)
            if strategy:
                strategy_id = (
                    db.query(SessionStrategy.id)
                    .filter(SessionStrategy.session_id == session_id, SessionStrategy.name == strategy)
                    .scalar()
                )
                if strategy_id is None:
                    return []
                query = query.filter(LogEvent.strategy_id == strategy_id)
            rows = query.order_by(LogEvent.id).limit(limit).all()
            return [r.to_dict() for r in rows]

    def open_positions(self, session_id: int) -> List[Position]:
        with self.store.scope() as db:
            return (
                db.query(Position)
                .filter(Position.session_id == session_id, Position.is_closed.is_(False))
                .order_by(Position.id)
                .all()
            )

    def symbol_prices(self, symbols: Sequence[str], interval: str) -> Dict[str, float]:
        prices = {}
        for symbol in symbols:
            df = self.cache.peek(symbol, interval)
            if df is not None and not df.empty:
                prices[symbol] = float(df["close"].iloc[-1])
        return prices

    # Helpers

    def _log(
        self, session_id: int, level: str, message: str, symbol: str = "", strategy_id: Optional[int] = None
    ) -> None:
        try:
            with self.store.scope() as db:
                db.add(LogEvent(
                    session_id=session_id, strategy_id=strategy_id, level=level,
                    symbol=symbol, message=message, created_at=utcnow(),
                ))
        except SQLAlchemyError as e:
            logger.error("Session %d: could not write %s log: %s", session_id, level, e)

    @staticmethod
    def _get_session(db, session_id: int) -> LiveSession:
        session = db.get(LiveSession, session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        return session

    @staticmethod
    def _open_count(db, session_id: int) -> int:
        return (
            db.query(Position)
            .filter(Position.session_id == session_id, Position.is_closed.is_(False))
            .count()
        )

    @staticmethod
    def _can_resume(db, session: LiveSession) -> bool:
        if session.is_active:
            return False
        config = db.get(StrategyConfig, session.config_id)
        if config is None or config_hash(config) != session.config_hash:
            return False
        return strategies_hash(session.strategies) == session.strategies_hash

    def _session_dict(self, db, session: LiveSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "name": session.name,
            "strategy_config_id": session.config_id,
            "symbols": list(session.symbols or []),
            "interval": session.interval,
            "trade_amount": session.trade_amount,
            "mode": session.mode,
            "is_active": bool(session.is_active),
            "started_at": session.started_at.isoformat() if session.started_at else None,
            "stopped_at": session.stopped_at.isoformat() if session.stopped_at else None,
            "last_poll_at": session.last_poll_at.isoformat() if session.last_poll_at else None,
            "total_polls": session.total_polls or 0,
            "can_resume": self._can_resume(db, session),
            "config_hash": session.config_hash,
            "alpaca_enabled": bool(session.alpaca_enabled),
            "alpaca_active": session.alpaca_active,
            "alpaca_last_error": session.alpaca_last_error,
            "alpaca_checked_at": session.alpaca_checked_at.isoformat() if session.alpaca_checked_at else None,
            "strategy": session.strategies[0].name if session.strategies else "",
            "strategies_count": len(session.strategies),
            "symbols_count": len(session.symbols or []),
            "open_positions": self._open_count(db, session.id),
        }
