"""Shared fixtures: synthetic bars, fake data provider, fake broker, scripted strategy."""

from __future__ import annotations
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import pytest

from trading_engine.core.errors import BrokerUnreachableError, DataUnavailableError
from trading_engine.core.types import Direction, SignalKind
from trading_engine.data.bars import normalize_bars
from trading_engine.data.cache import BarCache
from trading_engine.data.provider import DataProvider
from trading_engine.execution.base import BrokerAccount, BrokerClient, OrderResult
from trading_engine.live.session import LiveSessionManager
from trading_engine.live.store import Store
from trading_engine.strategies.base import BaseStrategy

START = "2024-01-02 14:30"
EPOCH = datetime(2000, 1, 1, tzinfo=timezone.utc)

# mean-reversion parameters for the sample scenario
SAMPLE_PARAMS = {
    "nw_lookback": 50,
    "bb1_period": 20,
    "bb1_stdev": 1.0,
    "bb2_period": 20,
    "bb3_period": 50,
    "bb4_period": 50,
    "risk_reward": 2.0,
    "sl_buffer": 1.5,
}


def make_bars(closes, start: str = START, freq: str = "1h", spread: float = 0.2) -> pd.DataFrame:
    """open = previous close, high/low = body +/- spread."""
    closes = [float(c) for c in closes]
    opens = [closes[0]] + closes[:-1]
    return pd.DataFrame({
        "time": pd.date_range(start, periods=len(closes), freq=freq, tz="UTC"),
        "open": opens,
        "high": [max(o, c) + spread for o, c in zip(opens, closes)],
        "low": [min(o, c) - spread for o, c in zip(opens, closes)],
        "close": closes,
        "volume": [1000.0] * len(closes),
    })


def uptrend_with_dip(n: int = 100, dip_at: int = 80) -> pd.DataFrame:
    """Steady uptrend, one sharp close below the lower band at dip_at, then recovery."""
    closes = [100.0 + 0.5 * i for i in range(n)]
    closes[dip_at] = 112.0
    return make_bars(closes)


def random_walk(n: int = 700, seed: int = 7, start_price: float = 100.0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    closes = start_price * np.exp(np.cumsum(rng.normal(0.0, 0.01, n)))
    opens = np.concatenate([[closes[0]], closes[:-1]])
    wick = np.abs(rng.normal(0.0, 0.004, n)) * closes
    return pd.DataFrame({
        "time": pd.date_range(START, periods=n, freq="1h", tz="UTC"),
        "open": opens,
        "high": np.maximum(opens, closes) + wick,
        "low": np.minimum(opens, closes) - wick,
        "close": closes,
        "volume": rng.integers(1_000, 10_000, n).astype(float),
    })


class FakeProvider(DataProvider):
    """Serves fixed frames; unknown symbols have no data."""

    def __init__(self, frames: Optional[Dict[str, pd.DataFrame]] = None, delay: float = 0.0):
        self.frames = {k.upper(): v for k, v in (frames or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def fetch(self, symbol: str, interval: str) -> pd.DataFrame:
        with self._lock:
            self.calls.append(symbol)
        if self.delay:
            threading.Event().wait(self.delay)
        frame = self.frames.get(symbol.upper())
        if frame is None:
            raise DataUnavailableError(symbol, interval)
        return normalize_bars(frame)


class FakeBroker(BrokerClient):
    """fail_orders: orders do not reach the broker. reject_orders: the broker refuses them."""

    def __init__(self, positions=None, fail_orders: bool = False, reject_orders: bool = False, unreachable: bool = False):
        self.positions = positions or []
        self.fail_orders = fail_orders
        self.reject_orders = reject_orders
        self.unreachable = unreachable
        self.orders: List[dict] = []
        self.closed: List[tuple] = []

    def _check(self):
        if self.unreachable:
            raise BrokerUnreachableError("GET /v2/account: ConnectionError")

    def _refused(self, method: str) -> Optional[OrderResult]:
        if self.fail_orders:
            return OrderResult(success=False, message=f"{method}: ConnectionError")
        if self.reject_orders:
            return OrderResult(success=False, message=f"{method}: HTTP 403 insufficient buying power", rejected=True)
        return None

    def get_account(self):
        self._check()
        return BrokerAccount(account_id="test-account", status="ACTIVE", buying_power=50000.0, portfolio_value=50000.0)

    def get_positions(self):
        self._check()
        return list(self.positions)

    def get_orders(self, status: str = "open"):
        self._check()
        return []

    def place_bracket_order(self, symbol, direction, quantity, stop_loss, take_profit, entry_price):
        refused = self._refused("POST /v2/orders")
        if refused is not None:
            return refused
        self.orders.append({"symbol": symbol, "direction": direction, "quantity": quantity})
        return OrderResult(success=True, order_id=f"fake-{len(self.orders)}", quantity=quantity)

    def close_position(self, symbol, quantity=None):
        refused = self._refused(f"DELETE /v2/positions/{symbol}")
        if refused is not None:
            return refused
        self.closed.append((symbol, quantity))
        return OrderResult(success=True, order_id=f"close-{symbol}", quantity=quantity)


class ScriptedStrategy(BaseStrategy):
    """Emits hand-placed signals: (index, kind, stop_loss, take_profit)."""

    name = "scripted"
    label = "Scripted"

    def __init__(self, script, trailing=None):
        super().__init__({})
        self.script = script
        self.trailing = trailing

    @property
    def required_bars(self) -> int:
        return 1

    def compute_indicators(self, df):
        return df

    def generate_signals(self, df):
        signals = []
        for i, kind, sl, tp in self.script:
            direction = Direction.LONG if kind == SignalKind.ENTRY_LONG else (
                Direction.SHORT if kind == SignalKind.ENTRY_SHORT else None
            )
            signals.append(self._signal(df, i, kind, "scripted", sl, tp, direction))
        return signals

    def trailing_stops(self, df):
        if self.trailing is None:
            return None
        return np.array(self.trailing, dtype=float), np.full(len(df), np.nan)


@pytest.fixture
def store():
    s = Store("sqlite://")
    yield s
    s.dispose()


@pytest.fixture
def sample_bars():
    return uptrend_with_dip()


@pytest.fixture
def live_env(store):
    """Manager over an in-memory store with TEST = the sample bars up to and including the dip."""
    provider = FakeProvider({"TEST": uptrend_with_dip().iloc[:81]})
    cache = BarCache(provider)
    manager = LiveSessionManager(store, cache)
    return manager, provider
