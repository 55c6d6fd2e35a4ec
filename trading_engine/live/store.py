"""
Session persistence: SQLAlchemy engine + session factory behind one lock.

The lock serializes writers (SQLite) and keeps log ids in emission order. It is
never held across network calls; callers fetch bars and talk to the broker
outside of a scope.
"""

from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from trading_engine.live.models import Base

logger = logging.getLogger("trading_engine.live.store")


class Store:
    def __init__(self, database_url: str = "sqlite:///trading_engine.db", echo: bool = False):
        kwargs = {"echo": echo}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self._factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.RLock()
        Base.metadata.create_all(self.engine)
        logger.info("Store ready: %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def scope(self) -> Iterator[Session]:
        """Transactional scope: commit on success, rollback on error."""
        with self._lock:
            db = self._factory()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def dispose(self) -> None:
        self.engine.dispose()
