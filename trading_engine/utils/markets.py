"""Exchange suffix helpers and US regular-session hours."""

from __future__ import annotations
from datetime import datetime, time as dt_time
from typing import Optional

import pytz

MARKET_TZ = pytz.timezone("America/New_York")
MARKET_OPEN = dt_time(9, 30)
MARKET_CLOSE = dt_time(16, 0)


def symbol_suffix(symbol: str) -> str:
    """'SAP.DE' -> 'DE'; 'AAPL' -> ''. Share classes like 'BRK-B' have no suffix."""
    if "." not in symbol:
        return ""
    return symbol.rsplit(".", 1)[1].upper()


def is_us_symbol(symbol: str) -> bool:
    return symbol_suffix(symbol) == ""


def is_us_market_open(now: Optional[datetime] = None) -> bool:
    """Regular session Mon-Fri 09:30-16:00 New York time. Holidays are not modelled."""
    if now is None:
        now = datetime.now(pytz.utc)
    elif now.tzinfo is None:
        now = pytz.utc.localize(now)
    local = now.astimezone(MARKET_TZ)
    if local.weekday() >= 5:
        return False
    return MARKET_OPEN <= local.time() < MARKET_CLOSE
