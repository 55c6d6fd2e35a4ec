"""Utils: Telegram, timeframes, markets, order filters."""

from trading_engine.utils.telegram import send_telegram
from trading_engine.utils.timeframes import timeframe_minutes, normalize_interval, interval_to_timedelta
from trading_engine.utils.markets import is_us_symbol, is_us_market_open

__all__ = [
    "send_telegram",
    "timeframe_minutes",
    "normalize_interval",
    "interval_to_timedelta",
    "is_us_symbol",
    "is_us_market_open",
]
