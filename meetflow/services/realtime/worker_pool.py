from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class _Job:
    name: str
    fn: Callable[[], None]


class WorkerPool:
    """Fixed set of daemon threads draining a bounded job queue.

    Concurrency is bounded by ``worker_count`` regardless of how many
    sessions are live.  Jobs must contain their own failures; anything that
    escapes is logged and the worker keeps going.
    """

    def __init__(
        self,
        worker_count: int = 4,
        queue_size: int = 256,
        submit_timeout: float = 1.0,
        name: str = "ChunkWorker",
    ) -> None:
        self._worker_count = max(1, worker_count)
        self._queue: queue.Queue[Optional[_Job]] = queue.Queue(maxsize=max(1, queue_size))
        self._submit_timeout = submit_timeout
        self._name = name
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._outstanding = 0
        self._running = False
        self._logger = logging.getLogger("meetflow.realtime.workers")

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        for index in range(self._worker_count):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"{self._name}-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        self._logger.info("Worker pool started: workers=%s", self._worker_count)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        for _ in self._threads:
            try:
                self._queue.put(None, timeout=timeout)
            except queue.Full:
                break
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        self._logger.info("Worker pool stopped")

    def submit(self, fn: Callable[[], None], name: str = "job") -> bool:
        """Queue a job; False when the queue stays full past the submit timeout."""
        with self._lock:
            if not self._running:
                self._logger.warning("Worker pool not running, rejecting %s", name)
                return False
            self._outstanding += 1
        try:
            self._queue.put(_Job(name=name, fn=fn), timeout=self._submit_timeout)
        except queue.Full:
            self._logger.warning("Chunk queue full, rejecting %s", name)
            self._job_done()
            return False
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._outstanding > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(timeout=remaining)
            return True

    def _job_done(self) -> None:
        with self._idle:
            self._outstanding -= 1
            if self._outstanding <= 0:
                self._outstanding = 0
                self._idle.notify_all()

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                break
            try:
                job.fn()
            except Exception:
                self._logger.exception("Worker job failed: %s", job.name)
            finally:
                self._job_done()
