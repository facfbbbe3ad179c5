from __future__ import annotations

import logging
import os
import threading
from typing import Optional

import soundfile as sf

from meetflow.services.audio_normalizer import AudioNormalizer, NormalizationFailed
from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.event_bus import EventBus
from meetflow.services.logging_setup import trace
from meetflow.services.meeting_store import MeetingStore
from meetflow.services.realtime.assembler import TranscriptAssembler
from meetflow.services.realtime.models import Chunk
from meetflow.services.realtime.pipeline import ChunkPipeline, TranscriptContext

_trace_logger = logging.getLogger("meetflow.trace")


class BatchProcessor:
    """Offline processing of an uploaded recording.

    The file is normalized once, cut into ``chunk_window`` slices, and each
    slice goes through the same ChunkPipeline the live path uses.  Chunks run
    sequentially on one daemon thread per upload.
    """

    def __init__(
        self,
        pipeline: ChunkPipeline,
        normalizer: AudioNormalizer,
        storage: ChunkStorage,
        store: MeetingStore,
        events: EventBus,
        chunk_window: float = 90.0,
    ) -> None:
        self._pipeline = pipeline
        self._normalizer = normalizer
        self._storage = storage
        self._store = store
        self._events = events
        self._chunk_window = chunk_window
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("meetflow.batch")

    def submit(self, meeting_id: str, audio_path: str) -> None:
        thread = threading.Thread(
            target=self.process,
            args=(meeting_id, audio_path),
            name=f"Batch-{meeting_id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[meeting_id] = thread
        thread.start()

    def wait(self, meeting_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            thread = self._threads.get(meeting_id)
        if thread is None:
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def _progress(self, meeting_id: str, status: str, progress: int) -> None:
        try:
            self._store.update_progress(meeting_id, status, progress)
        except OSError as exc:
            self._logger.warning("Failed to update progress for %s: %s", meeting_id, exc)

    def _fail(self, meeting_id: str, message: str, kind: Optional[str] = "normalization_failed") -> str:
        self._logger.error("Batch processing failed for %s: %s", meeting_id, message)
        if kind:
            self._events.publish(
                "error", None, meeting_id, {"chunk_index": None, "kind": kind, "message": message}
            )
        self._progress(meeting_id, "failed", 100)
        try:
            self._store.update_status(meeting_id, "failed")
        except OSError as exc:
            self._logger.warning("Failed to mark %s failed: %s", meeting_id, exc)
        return "failed"

    def process(self, meeting_id: str, audio_path: str) -> str:
        """Returns the final processing status: ``completed`` or ``failed``."""
        try:
            return self._process(meeting_id, audio_path)
        except Exception as exc:
            self._logger.exception("Batch processing crashed for %s", meeting_id)
            return self._fail(meeting_id, str(exc), kind="gateway_failed")
        finally:
            with self._lock:
                self._threads.pop(meeting_id, None)

    def _process(self, meeting_id: str, audio_path: str) -> str:
        self._progress(meeting_id, "processing", 10)
        normalized = self._storage.reserve(meeting_id, "normalized.wav")
        try:
            try:
                audio = self._normalizer.normalize_file(audio_path, normalized.path)
            except NormalizationFailed as exc:
                return self._fail(meeting_id, f"Normalization failed: {exc}")

            window_frames = max(1, int(round(self._chunk_window * audio.sample_rate)))
            total_chunks = max(1, -(-audio.frames // window_frames))
            self._logger.info(
                "Batch start: meeting=%s duration=%.1fs chunks=%s",
                meeting_id,
                audio.duration,
                total_chunks,
            )

            ctx = TranscriptContext(
                meeting_id=meeting_id,
                session_id=None,
                chunk_window=self._chunk_window,
                assembler=TranscriptAssembler(meeting_id, self._chunk_window),
            )
            succeeded = 0
            for index in range(total_chunks):
                start = index * window_frames
                stop = min(start + window_frames, audio.frames)
                data, _ = sf.read(normalized.path, start=start, stop=stop, dtype="int16")
                handle = self._storage.reserve(meeting_id, f"chunk_{index:05d}.wav")
                sf.write(handle.path, data, audio.sample_rate, subtype="PCM_16")
                chunk = Chunk(
                    session_id=meeting_id,
                    meeting_id=meeting_id,
                    chunk_index=index,
                    byte_length=os.path.getsize(handle.path),
                    start_offset=index * self._chunk_window,
                    end_offset=min((index + 1) * self._chunk_window, audio.duration),
                    handle=handle,
                )
                trace(_trace_logger, "seal", meeting_id=meeting_id, chunk=index, bytes=chunk.byte_length)
                outcome = self._pipeline.process(ctx, chunk)
                if outcome.succeeded and outcome.segment_count > 0:
                    succeeded += 1
                self._progress(meeting_id, "processing", 10 + int(80 * (index + 1) / total_chunks))
        finally:
            self._storage.release(normalized)

        if succeeded == 0:
            # Per-chunk errors were already published by the pipeline.
            return self._fail(meeting_id, "No chunk produced any transcript", kind=None)

        self._pipeline.finalize(ctx, audio.duration, total_chunks)
        self._progress(meeting_id, "completed", 100)
        self._store.update_status(meeting_id, "completed")
        self._logger.info("Batch complete: meeting=%s chunks=%s succeeded=%s", meeting_id, total_chunks, succeeded)
        return "completed"
