"""
Lifecycle sweeper for live sessions and temporary chunk files.

Runs as a daemon thread.  Every ``interval`` seconds it expires sessions
past their idle, disconnect or hard-duration ceilings, forgets completed
sessions past retention, and deletes chunk files whose owners released
them (or that nobody has tracked for longer than the grace period).
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from meetflow.services.chunk_storage import ChunkStorage
    from meetflow.services.realtime.registry import SessionRegistry

_logger = logging.getLogger("meetflow.realtime.sweeper")


class LifecycleSweeper:
    def __init__(
        self,
        registry: "SessionRegistry",
        storage: "ChunkStorage",
        *,
        interval: float = 300.0,
        initial_delay: float = 10.0,
    ) -> None:
        self._registry = registry
        self._storage = storage
        self._interval = interval
        self._initial_delay = initial_delay

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        """Start the sweeper thread."""
        if self._running:
            _logger.warning("LifecycleSweeper already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop,
            name="LifecycleSweeper",
            daemon=True,
        )
        self._thread.start()
        _logger.info("LifecycleSweeper started (interval=%.0fs)", self._interval)

    def stop(self) -> None:
        """Stop the sweeper thread."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
        _logger.info("LifecycleSweeper stopped")

    def sweep_once(self) -> dict:
        """One pass over sessions and chunk storage.  Never raises."""
        result = {"expired": 0, "removed": 0, "files_deleted": 0}
        try:
            result.update(self._registry.sweep_sessions())
        except Exception as exc:
            _logger.exception("Session sweep failed: %s", exc)
        try:
            result["files_deleted"] = self._storage.sweep()
        except Exception as exc:
            _logger.exception("Chunk storage sweep failed: %s", exc)
        if result["expired"] or result["files_deleted"]:
            _logger.info(
                "Sweep: expired=%s removed=%s files_deleted=%s",
                result["expired"],
                result["removed"],
                result["files_deleted"],
            )
        return result

    def _sweep_loop(self) -> None:
        _logger.info("LifecycleSweeper sweep loop started")

        # Let the server finish starting first
        self._stop_event.wait(self._initial_delay)

        while not self._stop_event.is_set():
            self.sweep_once()
            self._stop_event.wait(self._interval)
