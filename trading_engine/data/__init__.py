"""Bar data: providers, shared cache, frame helpers."""

from trading_engine.data.bars import (
    aggregate_bars,
    bars_to_frame,
    drop_forming_bar,
    frame_to_bars,
    merge_bars,
    normalize_bars,
)
from trading_engine.data.cache import BarCache
from trading_engine.data.provider import DataProvider, YahooProvider

__all__ = [
    "aggregate_bars",
    "bars_to_frame",
    "drop_forming_bar",
    "frame_to_bars",
    "merge_bars",
    "normalize_bars",
    "BarCache",
    "DataProvider",
    "YahooProvider",
]
