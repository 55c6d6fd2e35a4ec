"""
Shared bar cache with single-flight population per (symbol, interval).

Reads of populated keys take no lock. A stampede of misses for the same key
collapses to one upstream fetch; followers wait on the leader's future.
Empty results are never cached. Frames handed out must be treated read-only.
"""

from __future__ import annotations
import logging
import re
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd

from trading_engine.core.errors import DataUnavailableError
from trading_engine.data.bars import merge_bars, normalize_bars
from trading_engine.data.provider import DataProvider
from trading_engine.utils.timeframes import normalize_interval

logger = logging.getLogger("trading_engine.data.cache")

CacheKey = Tuple[str, str]


class BarCache:
    def __init__(self, provider: DataProvider, cache_dir: Optional[Path] = None):
        self.provider = provider
        self.cache_dir = Path(cache_dir) if cache_dir else None
        if self.cache_dir:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._frames: Dict[CacheKey, pd.DataFrame] = {}
        self._inflight: Dict[CacheKey, Future] = {}
        self._lock = threading.Lock()
        self.fetch_count = 0

    @staticmethod
    def key(symbol: str, interval: str) -> CacheKey:
        return symbol.upper(), normalize_interval(interval)

    def is_cached(self, symbol: str, interval: str) -> bool:
        return self.key(symbol, interval) in self._frames

    def peek(self, symbol: str, interval: str) -> Optional[pd.DataFrame]:
        return self._frames.get(self.key(symbol, interval))

    def get(self, symbol: str, interval: str) -> pd.DataFrame:
        """Cached bars, loading them once on a miss. Raises DataUnavailableError."""
        key = self.key(symbol, interval)
        frame = self._frames.get(key)
        if frame is not None:
            return frame
        return self._populate(key, symbol, interval, merge=False)

    def refresh(self, symbol: str, interval: str) -> pd.DataFrame:
        """Fetch fresh bars and merge them over the cached series (live delta update)."""
        key = self.key(symbol, interval)
        return self._populate(key, symbol, interval, merge=True)

    def put(self, symbol: str, interval: str, df: pd.DataFrame) -> None:
        df = normalize_bars(df)
        if df.empty:
            return
        key = self.key(symbol, interval)
        with self._lock:
            self._frames[key] = df
        self._persist(key, df)

    def clear(self) -> None:
        with self._lock:
            self._frames.clear()

    def _populate(self, key: CacheKey, symbol: str, interval: str, merge: bool) -> pd.DataFrame:
        with self._lock:
            if not merge and key in self._frames:
                return self._frames[key]
            fut = self._inflight.get(key)
            leader = fut is None
            if leader:
                fut = Future()
                self._inflight[key] = fut
        if not leader:
            return fut.result()
        try:
            frame = self._load(key, symbol, interval, merge)
        except BaseException as e:
            fut.set_exception(e)
            raise
        else:
            fut.set_result(frame)
            return frame
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def _load(self, key: CacheKey, symbol: str, interval: str, merge: bool) -> pd.DataFrame:
        current = self._frames.get(key)
        if current is None and not merge:
            current = self._read_file(key)
            if current is not None and not current.empty:
                with self._lock:
                    self._frames[key] = current
                return current
        fresh = self.provider.fetch(symbol, interval)
        self.fetch_count += 1
        frame = merge_bars(current, fresh) if merge else normalize_bars(fresh)
        if frame.empty:
            raise DataUnavailableError(symbol, interval)
        with self._lock:
            self._frames[key] = frame
        self._persist(key, frame)
        return frame

    def _path(self, key: CacheKey) -> Optional[Path]:
        if not self.cache_dir:
            return None
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", f"{key[0]}_{key[1]}")
        return self.cache_dir / f"{safe}.csv"

    def _read_file(self, key: CacheKey) -> Optional[pd.DataFrame]:
        path = self._path(key)
        if path is None or not path.exists():
            return None
        try:
            return normalize_bars(pd.read_csv(path))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache file %s: %s", path.name, e)
            return None

    def _persist(self, key: CacheKey, df: pd.DataFrame) -> None:
        path = self._path(key)
        if path is None:
            return
        try:
            df.to_csv(path, index=False)
        except OSError as e:
            logger.warning("Could not write cache file %s: %s", path.name, e)
