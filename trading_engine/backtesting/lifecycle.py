"""
Position lifecycle step shared by the backtest runner and live sessions.

Per bar, in order:
  1. a pending next-open entry fills at the bar open (SL/TP scaled to the fill)
  2. intrabar stop-loss / take-profit against low/high, stop-loss checked first,
     filled at the level
  3. an EXIT or opposing entry signal closes at the bar close (SIGNAL)
  4. when flat, an entry opens at the bar close, or is deferred to the next open
  5. the trailing stop ratchets toward price, never away from it
The step owns no state: positions live in a PositionBook supplied by the caller.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from trading_engine.core.types import CloseReason, Direction, Signal, SignalKind
from trading_engine.utils.order_filters import scale_levels

logger = logging.getLogger("trading_engine.lifecycle")


@dataclass(frozen=True)
class BarView:
    time: datetime
    open: float
    high: float
    low: float
    close: float


class OpenPosition(Protocol):
    direction: Direction
    entry_price: float
    current_stop: float
    take_profit: float


class PositionBook(Protocol):
    """Where the step applies its transitions (in-memory trades or persisted positions)."""

    def current(self) -> Optional[OpenPosition]: ...

    def open(
        self,
        direction: Direction,
        price: float,
        stop_loss: float,
        take_profit: float,
        time: datetime,
        signal: Signal,
    ) -> bool: ...

    def close(self, price: float, time: datetime, reason: CloseReason, note: str = "") -> None: ...

    def trail(self, new_stop: float, time: datetime) -> None: ...

    def mark(self, price: float, time: datetime) -> None: ...


def stop_hit(pos: OpenPosition, bar: BarView) -> bool:
    if not pos.current_stop:
        return False
    if pos.direction == Direction.LONG:
        return bar.low <= pos.current_stop
    return bar.high >= pos.current_stop


def target_hit(pos: OpenPosition, bar: BarView) -> bool:
    if not pos.take_profit:
        return False
    if pos.direction == Direction.LONG:
        return bar.high >= pos.take_profit
    return bar.low <= pos.take_profit


def exits_position(signal: Signal, pos: OpenPosition) -> bool:
    """EXIT for this side (or any side), or an entry in the opposite direction."""
    if signal.kind == SignalKind.EXIT:
        return signal.direction is None or signal.direction == pos.direction
    return signal.entry_direction == pos.direction.opposite


class PositionLifecycle:
    def __init__(self, entry_on_next_open: bool = False):
        self.entry_on_next_open = entry_on_next_open

    def step(
        self,
        book: PositionBook,
        bar: BarView,
        signals: Sequence[Signal] = (),
        pending: Optional[Signal] = None,
        trail_long: Optional[float] = None,
        trail_short: Optional[float] = None,
    ) -> Optional[Signal]:
        """Apply one bar. Returns the entry signal to fill at the next open, if any."""
        if pending is not None and book.current() is None:
            self._fill_pending(book, bar, pending)

        pos = book.current()
        if pos is not None:
            if stop_hit(pos, bar):
                book.close(pos.current_stop, bar.time, CloseReason.SL)
            elif target_hit(pos, bar):
                book.close(pos.take_profit, bar.time, CloseReason.TP)

        next_pending: Optional[Signal] = None
        for signal in signals:
            pos = book.current()
            if pos is not None:
                if exits_position(signal, pos):
                    book.close(bar.close, bar.time, CloseReason.SIGNAL, signal.reason)
                    pos = None
                else:
                    continue
            if not signal.is_entry:
                continue
            if self.entry_on_next_open:
                next_pending = signal
            else:
                book.open(signal.entry_direction, bar.close, signal.stop_loss, signal.take_profit, bar.time, signal)

        pos = book.current()
        if pos is not None:
            self._ratchet(book, pos, bar, trail_long, trail_short)
            book.mark(bar.close, bar.time)
        return next_pending

    def _fill_pending(self, book: PositionBook, bar: BarView, signal: Signal) -> None:
        stop, target = scale_levels(signal.price, bar.open, signal.stop_loss, signal.take_profit)
        book.open(signal.entry_direction, bar.open, stop, target, bar.time, signal)

    @staticmethod
    def _ratchet(
        book: PositionBook,
        pos: OpenPosition,
        bar: BarView,
        trail_long: Optional[float],
        trail_short: Optional[float],
    ) -> None:
        if pos.direction == Direction.LONG and trail_long is not None:
            if trail_long > (pos.current_stop or 0.0) and trail_long < bar.close:
                book.trail(trail_long, bar.time)
        elif pos.direction == Direction.SHORT and trail_short is not None:
            if (not pos.current_stop or trail_short < pos.current_stop) and trail_short > bar.close:
                book.trail(trail_short, bar.time)
