"""
Watchlist batch orchestrator: prefetch uncached bars, backtest every symbol on a
bounded thread pool, stream progress, then emit exactly one result.

Per-symbol failures land in skipped_symbols and never abort the batch. Once the
cancel event is set no further work is submitted, queued futures are cancelled
and nothing more is emitted (in particular no result).
"""

from __future__ import annotations
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from trading_engine.analytics.metrics import PerformanceMetrics, compute_metrics, filter_trades
from trading_engine.backtesting.engine import BacktestEngine
from trading_engine.core.errors import DataUnavailableError, EngineError
from trading_engine.core.types import Direction, Trade
from trading_engine.data.cache import BarCache
from trading_engine.risk.manager import RiskManager
from trading_engine.strategies.registry import create_strategy
from trading_engine.utils.markets import is_us_symbol

logger = logging.getLogger("trading_engine.batch")


@dataclass
class PrefetchEvent:
    current: int
    total: int
    symbol: str
    ok: bool = True
    type: str = "prefetch"

    def to_dict(self) -> dict:
        return {"type": self.type, "current": self.current, "total": self.total, "symbol": self.symbol, "ok": self.ok}


@dataclass
class ProgressEvent:
    current: int
    total: int
    symbol: str
    type: str = "progress"

    def to_dict(self) -> dict:
        return {"type": self.type, "current": self.current, "total": self.total, "symbol": self.symbol}


@dataclass
class BatchResult:
    per_stock: Dict[str, PerformanceMetrics] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)
    skipped_symbols: List[dict] = field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None
    include_end_trades: bool = True
    count_open_as_wins: bool = False

    def filtered(self, direction: Optional[Direction] = None, since: Optional[datetime] = None) -> "BatchResult":
        """Recompute per-stock and aggregate metrics on a trade projection."""
        trades = filter_trades(self.trades, direction, since)
        by_symbol: Dict[str, List[Trade]] = {s: [] for s in self.per_stock}
        for t in trades:
            by_symbol.setdefault(t.symbol, []).append(t)
        return BatchResult(
            per_stock={
                s: compute_metrics(ts, self.include_end_trades, self.count_open_as_wins)
                for s, ts in by_symbol.items()
            },
            trades=trades,
            skipped_symbols=list(self.skipped_symbols),
            metrics=compute_metrics(trades, self.include_end_trades, self.count_open_as_wins),
            include_end_trades=self.include_end_trades,
            count_open_as_wins=self.count_open_as_wins,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "per_stock": {s: m.to_dict() for s, m in self.per_stock.items()},
            "trades": [t.to_dict() for t in self.trades],
            "skipped_symbols": self.skipped_symbols,
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


@dataclass
class ResultEvent:
    result: BatchResult
    type: str = "result"

    def to_dict(self) -> dict:
        data = self.result.to_dict()
        data["type"] = self.type
        return data


BatchEvent = Union[PrefetchEvent, ProgressEvent, ResultEvent]


def _skip_reason(exc: Exception) -> str:
    if isinstance(exc, DataUnavailableError):
        return "no data"
    if isinstance(exc, EngineError):
        return exc.detail or exc.reason
    return f"{type(exc).__name__}: {exc}"


class BatchOrchestrator:
    def __init__(
        self,
        cache: BarCache,
        risk_manager: Optional[RiskManager] = None,
        max_workers: int = 50,
        prefetch_max_workers: int = 20,
        entry_on_next_open: bool = False,
        include_end_trades: bool = True,
        count_open_as_wins: bool = False,
    ):
        self.cache = cache
        self.risk_manager = risk_manager or RiskManager()
        self.max_workers = max(1, max_workers)
        self.prefetch_max_workers = max(1, prefetch_max_workers)
        self.entry_on_next_open = entry_on_next_open
        self.include_end_trades = include_end_trades
        self.count_open_as_wins = count_open_as_wins

    def run_batch(
        self,
        symbols: List[str],
        strategy: str,
        params: Optional[Mapping[str, Any]] = None,
        interval: str = "1h",
        us_only: bool = False,
        long_only: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[BatchEvent]:
        """
        Validate eagerly (unknown strategy / bad params raise here), then return the
        event stream.
        """
        instance = create_strategy(strategy, params)
        seen = set()
        universe = []
        for s in symbols:
            s = s.strip().upper()
            if not s or s in seen:
                continue
            seen.add(s)
            if us_only and not is_us_symbol(s):
                continue
            universe.append(s)
        engine = BacktestEngine(
            instance,
            self.risk_manager,
            long_only=long_only,
            entry_on_next_open=self.entry_on_next_open,
            include_end_trades=self.include_end_trades,
            count_open_as_wins=self.count_open_as_wins,
        )
        return self._stream(universe, engine, interval, cancel_event or threading.Event())

    def _stream(
        self, symbols: List[str], engine: BacktestEngine, interval: str, cancel: threading.Event
    ) -> Iterator[BatchEvent]:
        logger.info("Batch %s %s: %d symbols", engine.strategy.name, interval, len(symbols))
        skipped: Dict[str, str] = {}

        uncached = [s for s in symbols if not self.cache.is_cached(s, interval)]
        if uncached:
            done = 0
            for symbol, _, exc in self._map(uncached, lambda s: self.cache.get(s, interval), self.prefetch_max_workers, cancel):
                if exc is not None:
                    skipped[symbol] = _skip_reason(exc)
                done += 1
                yield PrefetchEvent(done, len(uncached), symbol, ok=exc is None)
            if cancel.is_set():
                return

        runnable = [s for s in symbols if s not in skipped]
        results: Dict[str, Any] = {}

        def run_one(symbol: str):
            bars = self.cache.get(symbol, interval)
            return engine.run(bars, symbol)

        done = 0
        for symbol, value, exc in self._map(runnable, run_one, self.max_workers, cancel):
            if exc is not None:
                skipped[symbol] = _skip_reason(exc)
            else:
                results[symbol] = value
            done += 1
            yield ProgressEvent(done, len(runnable), symbol)
        if cancel.is_set():
            logger.info("Batch cancelled after %d/%d symbols", done, len(runnable))
            return

        per_stock: Dict[str, PerformanceMetrics] = {}
        trades: List[Trade] = []
        for symbol in runnable:
            if symbol in skipped or symbol not in results:
                continue
            res = results[symbol]
            per_stock[symbol] = res.metrics
            trades.extend(res.trades)
        trades.sort(key=lambda t: (t.entry_time, t.symbol))
        result = BatchResult(
            per_stock=per_stock,
            trades=trades,
            skipped_symbols=[{"symbol": s, "reason": skipped[s]} for s in symbols if s in skipped],
            metrics=compute_metrics(trades, self.include_end_trades, self.count_open_as_wins),
            include_end_trades=self.include_end_trades,
            count_open_as_wins=self.count_open_as_wins,
        )
        logger.info(
            "Batch done: %d symbols, %d trades, %d skipped", len(per_stock), len(trades), len(result.skipped_symbols)
        )
        yield ResultEvent(result)

    @staticmethod
    def _map(
        items: List[str],
        fn: Callable[[str], Any],
        workers: int,
        cancel: threading.Event,
    ):
        """Yield (item, result, error) as work completes. Stops as soon as cancel is set."""
        if not items:
            return

        def guarded(item: str):
            if cancel.is_set():
                return None
            return fn(item)

        executor = ThreadPoolExecutor(max_workers=min(workers, len(items)), thread_name_prefix="batch")
        try:
            futures: Dict[Future, str] = {}
            for item in items:
                if cancel.is_set():
                    break
                futures[executor.submit(guarded, item)] = item
            for fut in as_completed(futures):
                if cancel.is_set():
                    return
                item = futures[fut]
                try:
                    value = fut.result()
                except Exception as e:
                    logger.warning("Batch item %s failed: %s", item, _skip_reason(e))
                    yield item, None, e
                    continue
                yield item, value, None
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
