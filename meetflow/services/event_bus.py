from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional


EventListener = Callable[[dict], None]


class EventBus:
    """Outbound channel for transcript, insight and lifecycle events.

    Events are kept in a bounded in-memory history.  Every event carries an
    absolute ``seq`` number; cursors handed out to SSE readers are absolute
    too, so trimming the history never shifts a reader's position.
    """

    def __init__(self, max_history: int = 1000) -> None:
        self._logger = logging.getLogger("meetflow.events")
        self._events_lock = threading.RLock()
        self._events: list[dict] = []
        self._events_condition = threading.Condition(self._events_lock)  # For push-based SSE
        self._base_seq = 0
        self._max_history = max_history
        self._listeners: list[EventListener] = []

    def publish(
        self,
        event_type: str,
        session_id: Optional[str],
        meeting_id: Optional[str],
        data: Optional[dict] = None,
    ) -> dict:
        with self._events_condition:
            payload = {
                "type": event_type,
                "session_id": session_id,
                "meeting_id": meeting_id,
                "timestamp": datetime.utcnow().isoformat(),
                "data": data or {},
                "seq": self._base_seq + len(self._events),
            }
            self._events.append(payload)
            if len(self._events) > self._max_history:
                keep = self._max_history // 2
                drop = len(self._events) - keep
                self._events = self._events[drop:]
                self._base_seq += drop
            self._events_condition.notify_all()
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                self._logger.exception("Event listener failed: type=%s", event_type)
        return payload

    def subscribe(self, listener: EventListener) -> None:
        with self._events_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        with self._events_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def head(self) -> int:
        """Cursor pointing just past the newest event."""
        with self._events_lock:
            return self._base_seq + len(self._events)

    def _slice_since(self, cursor: int) -> list[dict]:
        start = max(0, cursor - self._base_seq)
        return self._events[start:]

    def get_events_since(self, cursor: int) -> tuple[list[dict], int]:
        with self._events_condition:
            return self._slice_since(cursor), self._base_seq + len(self._events)

    def wait_for_events(self, cursor: int, timeout: float = 5.0) -> tuple[list[dict], int]:
        """Block until events newer than ``cursor`` exist or ``timeout`` expires.

        Args:
            cursor: Absolute sequence number of the next event the caller wants
            timeout: Max seconds to wait (for heartbeat/keepalive)

        Returns:
            Tuple of (new events since cursor, new cursor position)
        """
        with self._events_condition:
            if cursor < self._base_seq + len(self._events):
                return self._slice_since(cursor), self._base_seq + len(self._events)

            self._events_condition.wait(timeout=timeout)

            return self._slice_since(cursor), self._base_seq + len(self._events)

    def events_for_session(self, session_id: str) -> list[dict]:
        with self._events_lock:
            return [event for event in self._events if event.get("session_id") == session_id]
