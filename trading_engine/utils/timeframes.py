"""Interval string helpers (Yahoo-style: 5m, 1h, 60m, 4h, 1d, 1wk)."""

from datetime import timedelta

_ALIASES = {"60m": "1h", "1D": "1d", "1W": "1wk", "1w": "1wk"}


def normalize_interval(tf: str) -> str:
    """Canonical lowercase form; '60m' -> '1h', '1W' -> '1wk'."""
    tf = tf.strip()
    tf = _ALIASES.get(tf, tf).lower()
    return _ALIASES.get(tf, tf)


def timeframe_minutes(tf: str) -> int:
    """Convert interval string (e.g. '5m', '1h', '1d', '1wk') to minutes."""
    tf = normalize_interval(tf)
    try:
        if tf.endswith("wk"):
            return int(tf[:-2]) * 60 * 24 * 7
        if tf.endswith("m"):
            return int(tf[:-1])
        if tf.endswith("h"):
            return int(tf[:-1]) * 60
        if tf.endswith("d"):
            return int(tf[:-1]) * 60 * 24
    except ValueError:
        pass
    raise ValueError(f"Unsupported timeframe: {tf}")


def interval_to_timedelta(tf: str) -> timedelta:
    return timedelta(minutes=timeframe_minutes(tf))
