"""
Trade notifier: an outside observer of the session logs. Polls for events after
the last seen id and forwards trade events to Telegram.
"""

from __future__ import annotations
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from trading_engine.live.session import CLOSE, OPEN, SL, TP, LiveSessionManager
from trading_engine.utils.telegram import send_telegram

logger = logging.getLogger("trading_engine.live.notifier")

TRADE_LEVELS = (OPEN, CLOSE, SL, TP)


def format_event(session_name: str, event: dict) -> str:
    return f"{event['level']} {event['symbol']} [{session_name}]\n{event['message']}"


class TradeNotifier:
    def __init__(
        self,
        manager: LiveSessionManager,
        bot_token: str = "",
        chat_id: str = "",
        poll_seconds: float = 5.0,
        send: Optional[Callable[[str], bool]] = None,
    ):
        self.manager = manager
        self.poll_seconds = poll_seconds
        self._send = send or (lambda text: send_telegram(text, bot_token, chat_id))
        self._last_ids: Dict[int, int] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self, session_ids: Optional[Iterable[int]] = None) -> List[dict]:
        """Forward new trade events of the given (default: active) sessions. Returns what was sent."""
        sent = []
        ids = list(session_ids) if session_ids is not None else self.manager.active_session_ids()
        for session_id in ids:
            after = self._last_ids.get(session_id, 0)
            events = self.manager.logs_after(session_id, after)
            if not events:
                continue
            self._last_ids[session_id] = events[-1]["id"]
            name = f"session {session_id}"
            for event in events:
                if event["level"] not in TRADE_LEVELS:
                    continue
                if self._send(format_event(name, event)):
                    sent.append(event)
                else:
                    logger.debug("Notification for event %d not delivered", event["id"])
        return sent

    def skip_backlog(self, session_id: int) -> None:
        """Start notifying from the newest event of a session."""
        events = self.manager.logs_after(session_id, self._last_ids.get(session_id, 0), limit=100000)
        if events:
            self._last_ids[session_id] = events[-1]["id"]

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="trade-notifier", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Notifier poll failed")
            self._stop.wait(self.poll_seconds)
