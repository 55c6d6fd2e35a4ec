"""Retry decorator for HTTP calls made with requests."""

from __future__ import annotations
import functools
import logging
import time

import requests

logger = logging.getLogger("trading_engine.utils.retry")

RETRY_STATUS = (429, 500, 502, 503, 504)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code in RETRY_STATUS
    return False


def retry_on_rate_limit(max_retries: int = 3, base_delay: float = 1.0):
    """Decorator: retry on rate limit / transient upstream errors with exponential backoff."""
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return f(*args, **kwargs)
                except requests.RequestException as e:
                    if not _is_retryable(e) or attempt >= max_retries - 1:
                        raise
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "%s: %s, retry in %.1fs (attempt %d)", f.__name__, type(e).__name__, delay, attempt + 1
                    )
                    time.sleep(delay)
        return wrapped
    return decorator
