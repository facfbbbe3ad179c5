from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ChunkHandle:
    path: str
    token: str


@dataclass
class _Entry:
    token: str
    created_at: float
    released_at: Optional[float] = None


class ChunkStorage:
    """Temporary files for sealed and normalized chunks.

    Files are tracked by generation token.  A file is only deleted after its
    owner calls ``release`` with the matching token and the retention period
    has passed.  Files this process never tracked (left behind by a previous
    run) are deleted once they are older than the grace period.
    """

    def __init__(
        self,
        chunks_dir: str,
        retention_seconds: float = 60.0,
        grace_seconds: float = 7200.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = chunks_dir
        self._retention = retention_seconds
        self._grace = grace_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}
        self._logger = logging.getLogger("meetflow.chunk_storage")

    @property
    def root(self) -> str:
        return self._root

    def reserve(self, session_id: str, name: str) -> ChunkHandle:
        """Track a path the caller is about to write."""
        directory = os.path.join(self._root, session_id)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, name)
        handle = ChunkHandle(path=path, token=uuid.uuid4().hex)
        with self._lock:
            self._entries[os.path.abspath(path)] = _Entry(token=handle.token, created_at=self._clock())
        return handle

    def write(self, session_id: str, name: str, data: bytes) -> ChunkHandle:
        handle = self.reserve(session_id, name)
        try:
            with open(handle.path, "wb") as f:
                f.write(data)
        except OSError:
            with self._lock:
                self._entries.pop(os.path.abspath(handle.path), None)
            raise
        return handle

    def release(self, handle: ChunkHandle) -> bool:
        """Mark a file as consumed.  Stale tokens are ignored."""
        key = os.path.abspath(handle.path)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.token != handle.token:
                self._logger.debug("Ignoring release with stale token: %s", handle.path)
                return False
            if entry.released_at is None:
                entry.released_at = self._clock()
        return True

    def is_tracked(self, path: str) -> bool:
        with self._lock:
            return os.path.abspath(path) in self._entries

    def _remove(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            self._logger.info("Skipping busy chunk file %s: %s", path, exc)
            return False

    def sweep(self, now: Optional[float] = None) -> int:
        """Delete released files past retention and untracked files past grace.

        Never raises; anything that cannot be removed is retried next sweep.
        """
        current = self._clock() if now is None else now
        removed = 0

        with self._lock:
            due = [
                path
                for path, entry in self._entries.items()
                if entry.released_at is not None and current - entry.released_at >= self._retention
            ]
            tracked = set(self._entries.keys())

        for path in due:
            if self._remove(path):
                removed += 1
                with self._lock:
                    self._entries.pop(path, None)

        try:
            removed += self._sweep_untracked(current, tracked)
        except OSError as exc:
            self._logger.warning("Chunk directory scan failed: %s", exc)
        return removed

    def _sweep_untracked(self, now: float, tracked: set[str]) -> int:
        if not os.path.isdir(self._root):
            return 0
        removed = 0
        for dirpath, _dirnames, filenames in os.walk(self._root, topdown=False):
            for filename in filenames:
                path = os.path.abspath(os.path.join(dirpath, filename))
                if path in tracked:
                    continue
                try:
                    age = now - os.path.getmtime(path)
                except OSError:
                    continue
                if age >= self._grace and self._remove(path):
                    removed += 1
            if os.path.abspath(dirpath) == os.path.abspath(self._root):
                continue
            # Empty session directories go once they are as old as the grace period.
            try:
                if not os.listdir(dirpath) and now - os.path.getmtime(dirpath) >= self._grace:
                    os.rmdir(dirpath)
            except OSError:
                pass
        return removed
