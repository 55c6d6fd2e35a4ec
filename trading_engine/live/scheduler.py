"""
Session scheduler: one daemon thread per active polling session, ticking every
interval until the session is stopped. Registry of workers is keyed by session id.
"""

from __future__ import annotations
import logging
import threading
from typing import Dict, Optional

from trading_engine.core.errors import EngineError, NotFoundError
from trading_engine.live.reconcile import BrokerMonitor
from trading_engine.live.session import LiveSessionManager
from trading_engine.utils.timeframes import interval_to_timedelta

logger = logging.getLogger("trading_engine.live.scheduler")

MIN_POLL_SECONDS = 30.0


class _Worker:
    def __init__(self, thread: threading.Thread, stop_event: threading.Event):
        self.thread = thread
        self.stop_event = stop_event


class SessionScheduler:
    def __init__(
        self,
        manager: LiveSessionManager,
        monitor: Optional[BrokerMonitor] = None,
        poll_seconds: Optional[float] = None,
    ):
        self.manager = manager
        self.monitor = monitor
        # fixed poll period; default is the session interval
        self.poll_seconds = poll_seconds
        self._workers: Dict[int, _Worker] = {}
        self._lock = threading.Lock()

    def register(self, session_id: int) -> None:
        """Start ticking a session (idempotent)."""
        with self._lock:
            worker = self._workers.get(session_id)
            if worker is not None and worker.thread.is_alive():
                return
            period = self.poll_seconds or max(
                MIN_POLL_SECONDS, interval_to_timedelta(self.manager.session_interval(session_id)).total_seconds()
            )
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(session_id, period, stop_event),
                name=f"session-{session_id}",
                daemon=True,
            )
            self._workers[session_id] = _Worker(thread, stop_event)
            thread.start()
        logger.info("Scheduler: session %d every %.0fs", session_id, period)

    def deregister(self, session_id: int) -> None:
        with self._lock:
            worker = self._workers.pop(session_id, None)
        if worker is not None:
            worker.stop_event.set()
            logger.info("Scheduler: session %d released", session_id)

    def sync(self) -> None:
        """Match workers to the sessions marked active in the store (e.g. after a restart)."""
        active = set(self.manager.active_session_ids())
        with self._lock:
            running = set(self._workers)
        for session_id in running - active:
            self.deregister(session_id)
        for session_id in active - running:
            self.register(session_id)

    def shutdown(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
        for worker in workers:
            worker.stop_event.set()
        for worker in workers:
            worker.thread.join(timeout=5)

    def is_running(self, session_id: int) -> bool:
        with self._lock:
            worker = self._workers.get(session_id)
        return worker is not None and worker.thread.is_alive()

    def _run(self, session_id: int, period: float, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.manager.tick(session_id)
                if self.monitor is not None and self.monitor.broker is not None:
                    self.monitor.check(session_id)
            except NotFoundError:
                logger.warning("Scheduler: session %d vanished", session_id)
                break
            except EngineError as e:
                logger.error("Scheduler: session %d tick failed: %s", session_id, e.detail or e.reason)
            except Exception:
                logger.exception("Scheduler: session %d tick crashed", session_id)
            if stop_event.wait(period):
                break
