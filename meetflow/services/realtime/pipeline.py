from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from meetflow.services.audio_normalizer import AudioNormalizer, NormalizationFailed
from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.event_bus import EventBus
from meetflow.services.insights import ActionItem, ExtractionFailed, InsightExtractor
from meetflow.services.logging_setup import trace
from meetflow.services.meeting_store import MeetingStore
from meetflow.services.realtime.assembler import TranscriptAssembler
from meetflow.services.realtime.models import AssemblyUpdate, Chunk
from meetflow.services.resilience import GatewayError, error_kind
from meetflow.services.speech_service import SpeechService

_trace_logger = logging.getLogger("meetflow.trace")


@dataclass(eq=False)
class TranscriptContext:
    """Per-meeting transcript state shared by the live and batch paths."""

    meeting_id: str
    session_id: Optional[str]
    chunk_window: float
    assembler: TranscriptAssembler
    lock: threading.Lock = field(default_factory=threading.Lock)
    unanalyzed_text: str = ""
    action_item_count: int = 0
    language: Optional[str] = None

    @property
    def storage_key(self) -> str:
        return self.session_id or self.meeting_id


@dataclass(frozen=True)
class ChunkOutcome:
    chunk_index: int
    succeeded: bool
    duration: float = 0.0
    segment_count: int = 0
    action_item_count: int = 0
    error_kind: Optional[str] = None


class ChunkPipeline:
    """normalize -> transcribe/diarize -> extract -> assemble -> persist -> emit.

    Every per-chunk failure is contained here and reported as an ``error``
    event; ``process`` never raises for provider or audio problems.
    """

    def __init__(
        self,
        normalizer: AudioNormalizer,
        speech: SpeechService,
        insights: InsightExtractor,
        store: MeetingStore,
        events: EventBus,
        storage: ChunkStorage,
        min_extraction_chars: int = 50,
    ) -> None:
        self._normalizer = normalizer
        self._speech = speech
        self._insights = insights
        self._store = store
        self._events = events
        self._storage = storage
        self._min_extraction_chars = min_extraction_chars
        self._logger = logging.getLogger("meetflow.realtime.pipeline")

    def _error(self, ctx: TranscriptContext, kind: str, message: str, chunk_index: Optional[int] = None) -> None:
        self._events.publish(
            "error",
            ctx.session_id,
            ctx.meeting_id,
            {"chunk_index": chunk_index, "kind": kind, "message": message},
        )

    def _chunk_processed(self, ctx: TranscriptContext, chunk: Chunk, status: str, has_transcript: bool) -> None:
        self._events.publish(
            "chunk_processed",
            ctx.session_id,
            ctx.meeting_id,
            {
                "chunk_index": chunk.chunk_index,
                "status": status,
                "has_transcript": has_transcript,
                "client_timestamp": chunk.client_timestamp,
            },
        )

    def process(self, ctx: TranscriptContext, chunk: Chunk) -> ChunkOutcome:
        index = chunk.chunk_index
        started = time.perf_counter()
        normalized = self._storage.reserve(ctx.storage_key, f"chunk_{index:05d}_normalized.wav")
        try:
            try:
                with open(chunk.handle.path, "rb") as f:
                    raw = f.read()
                audio = self._normalizer.normalize_bytes(raw, normalized.path)
            except (NormalizationFailed, OSError) as exc:
                self._logger.warning("Chunk %s dropped, normalization failed: %s", index, exc)
                self._error(ctx, "normalization_failed", str(exc), index)
                self._chunk_processed(ctx, chunk, "failed", False)
                return ChunkOutcome(chunk_index=index, succeeded=False, error_kind="normalization_failed")
            trace(_trace_logger, "normalize", meeting_id=ctx.meeting_id, chunk=index, duration=round(audio.duration, 2))

            try:
                transcript = self._speech.process(audio.path, audio.duration)
            except GatewayError as exc:
                kind = error_kind(exc)
                self._logger.warning("Chunk %s produced no segments (%s): %s", index, kind, exc)
                self._error(ctx, kind, str(exc), index)
                self._chunk_processed(ctx, chunk, "failed", False)
                return ChunkOutcome(chunk_index=index, succeeded=False, error_kind=kind)
            trace(
                _trace_logger,
                "transcribe",
                meeting_id=ctx.meeting_id,
                chunk=index,
                chars=len(transcript.text),
                utterances=len(transcript.utterances),
            )

            items = self._maybe_extract(ctx, index, transcript.text)
            update = ctx.assembler.apply(index, transcript, audio.duration)
            with ctx.lock:
                if transcript.language:
                    ctx.language = transcript.language
                ctx.action_item_count += len(items)
            trace(
                _trace_logger,
                "assemble",
                meeting_id=ctx.meeting_id,
                chunk=index,
                segments=len(update.new_segments),
                words=update.word_count,
            )

            self._persist(ctx, update, items, transcript.language, index)
            self._emit(ctx, update, items)
            self._chunk_processed(ctx, chunk, "completed", bool(update.new_segments))
            self._logger.info(
                "Chunk %s processed in %.2fs: segments=%s action_items=%s",
                index,
                time.perf_counter() - started,
                len(update.new_segments),
                len(items),
            )
            return ChunkOutcome(
                chunk_index=index,
                succeeded=True,
                duration=audio.duration,
                segment_count=len(update.new_segments),
                action_item_count=len(items),
            )
        finally:
            self._storage.release(chunk.handle)
            self._storage.release(normalized)

    def _maybe_extract(self, ctx: TranscriptContext, chunk_index: int, text: str) -> list[ActionItem]:
        """Run extraction once enough un-analyzed text has piled up."""
        with ctx.lock:
            if text and text.strip():
                ctx.unanalyzed_text = f"{ctx.unanalyzed_text} {text.strip()}".strip()
            if len(ctx.unanalyzed_text) < self._min_extraction_chars:
                return []
            pending_text = ctx.unanalyzed_text
            ctx.unanalyzed_text = ""

        try:
            return self._insights.extract_action_items(
                pending_text,
                ctx.assembler.speaker_context(),
                chunk_index=chunk_index,
                context_timestamp=chunk_index * ctx.chunk_window,
            )
        except ExtractionFailed as exc:
            self._logger.warning("Action items skipped for chunk %s: %s", chunk_index, exc)
            self._error(ctx, "extraction_failed", str(exc), chunk_index)
            return []

    def _persist(
        self,
        ctx: TranscriptContext,
        update: AssemblyUpdate,
        items: list[ActionItem],
        language: Optional[str],
        chunk_index: int,
    ) -> None:
        try:
            if update.new_segments:
                self._store.append_segments(ctx.meeting_id, [s.to_dict() for s in update.new_segments])
            if update.speakers:
                self._store.upsert_speakers(ctx.meeting_id, [s.to_dict() for s in update.speakers])
            self._store.update_transcript(
                ctx.meeting_id,
                update.full_text,
                update.word_count,
                language=language,
                duration=ctx.assembler.processed_duration,
            )
            if items:
                self._store.add_action_items(
                    ctx.meeting_id,
                    [i.to_dict() for i in items],
                    source_chunk=chunk_index,
                    context_timestamp=chunk_index * ctx.chunk_window,
                )
        except OSError as exc:
            self._logger.warning("Failed to persist chunk %s for %s: %s", chunk_index, ctx.meeting_id, exc)

    def _emit(self, ctx: TranscriptContext, update: AssemblyUpdate, items: list[ActionItem]) -> None:
        self._events.publish("transcript_update", ctx.session_id, ctx.meeting_id, update.to_event())
        for item in items:
            self._publish_action_item(ctx, item)

    def _publish_action_item(self, ctx: TranscriptContext, item: ActionItem) -> None:
        self._events.publish(
            "action_item_detected",
            ctx.session_id,
            ctx.meeting_id,
            {
                "title": item.title,
                "assignee": item.assignee,
                "due_date": item.due_date,
                "priority": item.priority,
                "confidence": item.confidence,
                "source_chunk": item.source_chunk,
            },
        )

    def finalize(self, ctx: TranscriptContext, total_duration: float, chunks_processed: int) -> dict:
        """Final insight pass over the complete transcript; emits ``final_summary``."""
        text = ctx.assembler.full_text
        context = {
            "duration": total_duration,
            "chunks_processed": chunks_processed,
            "speakers": ctx.assembler.speaker_context(),
        }
        try:
            analysis = self._insights.analyze_meeting(text, context)
        except ExtractionFailed as exc:
            self._logger.warning("Final analysis failed for %s: %s", ctx.meeting_id, exc)
            self._error(ctx, "finalization_failed", str(exc))
            analysis = {
                "summary": "",
                "key_points": [],
                "decisions": [],
                "topics": [],
                "sentiment": {"overall": "neutral"},
                "action_items": [],
            }

        items: list[ActionItem] = analysis.pop("action_items", [])
        try:
            if text.strip():
                self._store.add_analysis(ctx.meeting_id, "comprehensive", analysis)
            if items:
                self._store.add_action_items(ctx.meeting_id, [i.to_dict() for i in items])
        except OSError as exc:
            self._logger.warning("Failed to persist final analysis for %s: %s", ctx.meeting_id, exc)

        with ctx.lock:
            ctx.action_item_count += len(items)
        for item in items:
            self._publish_action_item(ctx, item)
        self._events.publish("final_summary", ctx.session_id, ctx.meeting_id, dict(analysis))
        trace(_trace_logger, "finalize", meeting_id=ctx.meeting_id, chars=len(text), action_items=len(items))
        return analysis
