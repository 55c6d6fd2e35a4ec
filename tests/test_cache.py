"""Bar cache: single-flight population, misses, refresh merge, disk files."""

import threading

import pytest
from trading_engine.core.errors import DataUnavailableError
from trading_engine.data.bars import empty_frame
from trading_engine.data.cache import BarCache

from conftest import FakeProvider, make_bars


def test_concurrent_misses_fetch_once():
    provider = FakeProvider({"AAPL": make_bars(range(100, 130))}, delay=0.2)
    cache = BarCache(provider)
    barrier = threading.Barrier(8)
    frames = []

    def worker():
        barrier.wait()
        frames.append(cache.get("AAPL", "1h"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert cache.fetch_count == 1
    assert provider.calls == ["AAPL"]
    assert len(frames) == 8
    assert all(len(f) == 30 for f in frames)


def test_cache_key_normalization():
    provider = FakeProvider({"AAPL": make_bars(range(100, 110))})
    cache = BarCache(provider)
    cache.get("aapl", "60m")
    cache.get("AAPL", "1h")
    assert cache.fetch_count == 1
    assert cache.is_cached("AAPL", "1h")


def test_missing_data_not_cached():
    provider = FakeProvider({})
    cache = BarCache(provider)
    with pytest.raises(DataUnavailableError):
        cache.get("NOPE", "1h")
    with pytest.raises(DataUnavailableError):
        cache.get("NOPE", "1h")
    assert len(provider.calls) == 2
    assert not cache.is_cached("NOPE", "1h")


def test_empty_result_not_cached():
    provider = FakeProvider({"EMPTY": empty_frame()})
    cache = BarCache(provider)
    with pytest.raises(DataUnavailableError):
        cache.get("EMPTY", "1h")
    assert not cache.is_cached("EMPTY", "1h")


def test_refresh_merges_fresh_bars():
    full = make_bars(range(100, 120))
    provider = FakeProvider({"AAPL": full.iloc[:10]})
    cache = BarCache(provider)
    assert len(cache.get("AAPL", "1h")) == 10
    # upstream now returns the last bar again (it was forming) plus new ones
    provider.frames["AAPL"] = full.iloc[9:15]
    merged = cache.refresh("AAPL", "1h")
    assert len(merged) == 15
    assert merged["time"].is_monotonic_increasing
    assert cache.get("AAPL", "1h") is merged


def test_disk_cache_round_trip(tmp_path):
    provider = FakeProvider({"AAPL": make_bars(range(100, 110))})
    BarCache(provider, tmp_path).get("AAPL", "1h")
    assert (tmp_path / "AAPL_1h.csv").exists()
    fresh_cache = BarCache(FakeProvider({}), tmp_path)
    frame = fresh_cache.get("AAPL", "1h")
    assert len(frame) == 10
    assert fresh_cache.fetch_count == 0
