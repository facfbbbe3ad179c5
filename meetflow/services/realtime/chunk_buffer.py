from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class SealedAudio:
    chunk_index: int
    data: bytes
    started_at: float
    sealed_at: float
    client_timestamp: Optional[float]
    forced: bool


class ChunkBuffer:
    """Accumulates one session's raw audio until the chunk window elapses.

    A chunk seals once ``window_seconds`` have passed on ``clock`` since the
    first append into an empty buffer, or once the buffered bytes hold a
    full window of audio at ``bytes_per_second``.  Not thread-safe: the
    owning session serializes calls.
    """

    def __init__(
        self,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        bytes_per_second: Optional[int] = None,
    ) -> None:
        self._window = window_seconds
        self._bytes_per_second = bytes_per_second
        self._clock = clock
        self._parts: list[bytes] = []
        self._size = 0
        self._started_at: Optional[float] = None
        self._client_timestamp: Optional[float] = None
        self._next_index = 0

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def next_chunk_index(self) -> int:
        return self._next_index

    @property
    def byte_length(self) -> int:
        return self._size

    def nominal_duration(self) -> float:
        """Seconds of raw PCM buffered; 0 when the byte rate is unknown."""
        if not self._bytes_per_second:
            return 0.0
        return self._size / self._bytes_per_second

    def elapsed(self, now: Optional[float] = None) -> float:
        if self._started_at is None:
            return 0.0
        current = self._clock() if now is None else now
        return max(0.0, current - self._started_at)

    def append(
        self,
        data: bytes,
        client_timestamp: Optional[float] = None,
        forced: bool = False,
    ) -> Optional[SealedAudio]:
        """Add bytes; return the sealed chunk if this append crossed the window."""
        now = self._clock()
        if data:
            if self._started_at is None:
                self._started_at = now
            self._parts.append(bytes(data))
            self._size += len(data)
        if client_timestamp is not None:
            self._client_timestamp = client_timestamp

        if forced or self.elapsed(now) >= self._window or self.nominal_duration() >= self._window:
            return self._seal(now, forced)
        return None

    def flush(self) -> Optional[SealedAudio]:
        """Seal whatever is buffered; an empty buffer yields nothing."""
        return self._seal(self._clock(), True)

    def _seal(self, now: float, forced: bool) -> Optional[SealedAudio]:
        if self._size == 0:
            return None
        sealed = SealedAudio(
            chunk_index=self._next_index,
            data=b"".join(self._parts),
            started_at=self._started_at if self._started_at is not None else now,
            sealed_at=now,
            client_timestamp=self._client_timestamp,
            forced=forced,
        )
        self._parts = []
        self._size = 0
        self._started_at = None
        self._next_index += 1
        return sealed
