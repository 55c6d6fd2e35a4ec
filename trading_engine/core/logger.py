"""
Logging setup for the engine: console plus optional rotating file.
"""

from __future__ import annotations
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_NOISY = ("urllib3", "sqlalchemy.engine", "uvicorn.access")


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the trading_engine logger: console and optional file.
    Never log broker keys or Telegram tokens.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger("trading_engine")
    root.setLevel(log_level)
    root.handlers.clear()
    root.propagate = False

    fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_fmt = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(fmt, datefmt=date_fmt)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir and log_file:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            log_dir / log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        fh.setFormatter(formatter)
        root.addHandler(fh)

    for name in _NOISY:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return root
