from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.event_bus import EventBus
from meetflow.services.logging_setup import trace
from meetflow.services.meeting_store import MeetingStore
from meetflow.services.realtime.assembler import TranscriptAssembler
from meetflow.services.realtime.chunk_buffer import ChunkBuffer, SealedAudio
from meetflow.services.realtime.config import RealtimeConfig
from meetflow.services.realtime.models import Chunk, SessionStatus
from meetflow.services.realtime.pipeline import ChunkOutcome, ChunkPipeline, TranscriptContext
from meetflow.services.realtime.worker_pool import WorkerPool

_trace_logger = logging.getLogger("meetflow.trace")


class SessionNotFound(RuntimeError):
    pass


class SessionExpired(SessionNotFound):
    pass


@dataclass(eq=False)
class Session:
    session_id: str
    connection_id: Optional[str]
    meeting_id: str
    title: Optional[str]
    created_at: str
    started_at: float
    buffer: ChunkBuffer
    transcript: TranscriptContext
    status: SessionStatus = SessionStatus.ACTIVE
    last_activity: float = 0.0
    status_changed_at: float = 0.0
    chunks_sealed: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    pending: int = 0
    cumulative_duration: float = 0.0
    last_sequence_hint: Optional[int] = None
    finalize_scheduled: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


class SessionRegistry:
    """Owns every live session and its state machine.

    active -> flushing -> completed
    active -> disconnected -> completed (stop still arrives) | expired
    active -> expired (sweeper)

    Each session's mutable fields are guarded by its own lock; the table
    itself has an independent lock.  Chunk processing runs on the worker
    pool, so ingestion never waits for a provider call.
    """

    def __init__(
        self,
        config: RealtimeConfig,
        pipeline: ChunkPipeline,
        pool: WorkerPool,
        storage: ChunkStorage,
        store: MeetingStore,
        events: EventBus,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._pipeline = pipeline
        self._pool = pool
        self._storage = storage
        self._store = store
        self._events = events
        self._clock = clock
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._sessions: dict[str, Session] = {}
        self._tombstones: dict[str, float] = {}
        self._logger = logging.getLogger("meetflow.realtime.registry")

    # ── lookup ─────────────────────────────────────────────────────────

    def _get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            if session_id in self._tombstones:
                raise SessionExpired(f"Session expired: {session_id}")
        raise SessionNotFound(f"Session not found: {session_id}")

    def _set_status(self, session: Session, status: SessionStatus) -> None:
        # Caller holds session.lock.
        previous = session.status
        session.status = status
        session.status_changed_at = self._clock()
        self._logger.info(
            "Session %s: %s -> %s", session.session_id, previous.value, status.value
        )
        with self._changed:
            self._changed.notify_all()

    def _snapshot(self, session: Session) -> dict:
        # Caller holds session.lock.
        ctx = session.transcript
        with ctx.lock:
            action_items = ctx.action_item_count
        return {
            "session_id": session.session_id,
            "meeting_id": session.meeting_id,
            "status": session.status.value,
            "chunks_sealed": session.chunks_sealed,
            "chunks_processed": session.chunks_processed,
            "chunks_failed": session.chunks_failed,
            "pending_chunks": session.pending,
            "transcript_length": len(ctx.assembler.full_text),
            "word_count": ctx.assembler.word_count,
            "action_item_count": action_items,
            "duration": round(session.cumulative_duration, 3),
            "buffered_bytes": session.buffer.byte_length,
            "chunk_window": session.buffer.window_seconds,
            "created_at": session.created_at,
        }

    # ── inbound events ─────────────────────────────────────────────────

    def start(
        self,
        session_hint: Optional[str] = None,
        meeting_title: Optional[str] = None,
        connection_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        """Create a session in ``active`` state and its meeting record."""
        window = self._config.chunk_window_seconds
        now = self._clock()
        meeting = self._store.create_meeting(
            title=meeting_title, source="realtime", user_id=user_id, processing_status="live"
        )
        meeting_id = meeting["id"]

        with self._lock:
            session_id = session_hint
            if not session_id or session_id in self._sessions or session_id in self._tombstones:
                session_id = uuid.uuid4().hex
            session = Session(
                session_id=session_id,
                connection_id=connection_id,
                meeting_id=meeting_id,
                title=meeting.get("title"),
                created_at=datetime.utcnow().isoformat(),
                started_at=now,
                buffer=ChunkBuffer(
                    window,
                    clock=self._clock,
                    bytes_per_second=self._config.input_sample_rate * self._config.input_channels * 2,
                ),
                transcript=TranscriptContext(
                    meeting_id=meeting_id,
                    session_id=session_id,
                    chunk_window=window,
                    assembler=TranscriptAssembler(meeting_id, window),
                ),
                last_activity=now,
                status_changed_at=now,
            )
            self._sessions[session_id] = session

        self._logger.info(
            "Session started: session=%s meeting=%s connection=%s window=%.1fs",
            session_id,
            meeting_id,
            connection_id,
            window,
        )
        self._events.publish(
            "recording_started",
            session_id,
            meeting_id,
            {"chunk_window": window, "title": meeting.get("title")},
        )
        return {"session_id": session_id, "meeting_id": meeting_id, "chunk_window": window}

    def append_audio(
        self,
        session_id: str,
        data: bytes,
        client_timestamp: Optional[float] = None,
        forced_flush: bool = False,
        chunk_sequence_hint: Optional[int] = None,
    ) -> dict:
        session = self._get(session_id)
        with session.lock:
            if session.status != SessionStatus.ACTIVE:
                raise SessionNotFound(
                    f"Session {session_id} is {session.status.value} and no longer accepts audio"
                )
            if chunk_sequence_hint is not None:
                last = session.last_sequence_hint
                if last is not None and chunk_sequence_hint <= last:
                    self._logger.warning(
                        "Out-of-order fragment for %s: hint=%s last=%s",
                        session_id,
                        chunk_sequence_hint,
                        last,
                    )
                session.last_sequence_hint = chunk_sequence_hint
            session.last_activity = self._clock()
            sealed = session.buffer.append(data, client_timestamp=client_timestamp, forced=forced_flush)
            if sealed is not None:
                self._dispatch(session, sealed)
            return self._snapshot(session)

    def stop(self, session_id: str) -> dict:
        """Begin end-of-stream: seal the remainder and finalize once idle."""
        session = self._get(session_id)
        with session.lock:
            if session.status in (SessionStatus.FLUSHING, SessionStatus.COMPLETED):
                return self._snapshot(session)
            if session.status not in (SessionStatus.ACTIVE, SessionStatus.DISCONNECTED):
                raise SessionNotFound(f"Session {session_id} is {session.status.value}")
            self._set_status(session, SessionStatus.FLUSHING)
            session.last_activity = self._clock()
            sealed = session.buffer.flush()
            if sealed is not None:
                self._dispatch(session, sealed)
            should_finalize = self._claim_finalize(session)
            snapshot = self._snapshot(session)
        trace(_trace_logger, "stop", session_id=session_id, pending=snapshot["pending_chunks"])
        if should_finalize:
            self._schedule_finalize(session)
        return snapshot

    def status(self, session_id: str) -> dict:
        session = self._get(session_id)
        with session.lock:
            return self._snapshot(session)

    def list_sessions(self) -> list[dict]:
        with self._lock:
            sessions = list(self._sessions.values())
        snapshots = []
        for session in sessions:
            with session.lock:
                snapshots.append(self._snapshot(session))
        return snapshots

    def connection_lost(self, connection_id: str) -> list[str]:
        """Mark every active session owned by ``connection_id`` as disconnected."""
        with self._lock:
            owned = [s for s in self._sessions.values() if s.connection_id == connection_id]
        affected = []
        for session in owned:
            with session.lock:
                if session.status == SessionStatus.ACTIVE:
                    self._set_status(session, SessionStatus.DISCONNECTED)
                    affected.append(session.session_id)
        if affected:
            self._logger.info("Connection %s lost: sessions=%s", connection_id, affected)
        return affected

    # ── chunk dispatch ─────────────────────────────────────────────────

    def _dispatch(self, session: Session, sealed: SealedAudio) -> None:
        # Caller holds session.lock; sealing is serialized per session here.
        window = session.buffer.window_seconds
        index = sealed.chunk_index
        try:
            handle = self._storage.write(session.session_id, f"chunk_{index:05d}.raw", sealed.data)
        except OSError as exc:
            self._logger.error("Failed to store chunk %s for %s: %s", index, session.session_id, exc)
            session.chunks_failed += 1
            self._events.publish(
                "error",
                session.session_id,
                session.meeting_id,
                {"chunk_index": index, "kind": "normalization_failed", "message": str(exc)},
            )
            return

        chunk = Chunk(
            session_id=session.session_id,
            meeting_id=session.meeting_id,
            chunk_index=index,
            byte_length=len(sealed.data),
            start_offset=index * window,
            end_offset=(index + 1) * window,
            handle=handle,
            forced=sealed.forced,
            client_timestamp=sealed.client_timestamp,
        )
        session.chunks_sealed += 1
        session.pending += 1
        trace(
            _trace_logger,
            "seal",
            session_id=session.session_id,
            chunk=index,
            bytes=chunk.byte_length,
            forced=chunk.forced,
        )

        submitted = self._pool.submit(
            lambda: self._run_chunk(session, chunk),
            name=f"chunk:{session.session_id}:{index}",
        )
        if not submitted:
            session.pending -= 1
            session.chunks_failed += 1
            self._storage.release(handle)
            self._events.publish(
                "error",
                session.session_id,
                session.meeting_id,
                {"chunk_index": index, "kind": "queue_full", "message": "Chunk queue full, chunk dropped"},
            )

    def _run_chunk(self, session: Session, chunk: Chunk) -> None:
        try:
            outcome = self._pipeline.process(session.transcript, chunk)
        except Exception as exc:
            self._logger.exception("Chunk %s crashed for %s", chunk.chunk_index, session.session_id)
            outcome = ChunkOutcome(chunk_index=chunk.chunk_index, succeeded=False, error_kind="gateway_failed")
            self._events.publish(
                "error",
                session.session_id,
                session.meeting_id,
                {"chunk_index": chunk.chunk_index, "kind": "gateway_failed", "message": str(exc)},
            )

        with session.lock:
            session.pending -= 1
            session.chunks_processed += 1
            if outcome.succeeded:
                session.cumulative_duration += outcome.duration
            else:
                session.chunks_failed += 1
            should_finalize = self._claim_finalize(session)
        with self._changed:
            self._changed.notify_all()
        if should_finalize:
            self._schedule_finalize(session)

    # ── finalization ───────────────────────────────────────────────────

    def _claim_finalize(self, session: Session) -> bool:
        # Caller holds session.lock.
        if session.status != SessionStatus.FLUSHING or session.pending > 0 or session.finalize_scheduled:
            return False
        session.finalize_scheduled = True
        return True

    def _schedule_finalize(self, session: Session) -> None:
        def job() -> None:
            self._finalize(session)

        if self._pool.submit(job, name=f"finalize:{session.session_id}"):
            return
        self._logger.warning("Worker pool busy, finalizing %s on a dedicated thread", session.session_id)
        threading.Thread(target=job, name=f"Finalize-{session.session_id}", daemon=True).start()

    def _finalize(self, session: Session) -> None:
        with session.lock:
            duration = session.cumulative_duration
            processed = session.chunks_processed
        try:
            self._pipeline.finalize(session.transcript, duration, processed)
        except Exception as exc:
            self._logger.exception("Final pass failed for %s", session.session_id)
            self._events.publish(
                "error",
                session.session_id,
                session.meeting_id,
                {"chunk_index": None, "kind": "finalization_failed", "message": str(exc)},
            )

        try:
            self._store.update_progress(session.meeting_id, "completed", 100)
            self._store.update_status(session.meeting_id, "completed")
        except OSError as exc:
            self._logger.warning("Failed to mark meeting %s completed: %s", session.meeting_id, exc)
        # Readers that see ``completed`` also see ``recording_stopped``.
        with session.lock:
            self._set_status(session, SessionStatus.COMPLETED)
            self._events.publish(
                "recording_stopped",
                session.session_id,
                session.meeting_id,
                {"total_duration": round(duration, 3), "chunks_processed": processed},
            )
        self._logger.info(
            "Session completed: session=%s chunks=%s duration=%.1fs",
            session.session_id,
            processed,
            duration,
        )

    # ── sweeping ───────────────────────────────────────────────────────

    def _expiry_reason(self, session: Session, now: float) -> Optional[str]:
        # Caller holds session.lock.
        if session.status not in (SessionStatus.ACTIVE, SessionStatus.DISCONNECTED):
            return None
        if now - session.started_at >= self._config.max_session_seconds:
            return "max_duration"
        if session.status == SessionStatus.DISCONNECTED:
            if now - session.status_changed_at >= self._config.disconnect_timeout_seconds:
                return "disconnect_timeout"
        elif now - session.last_activity >= self._config.idle_timeout_seconds:
            return "idle_timeout"
        return None

    def _expire_locked(self, session: Session, reason: str) -> None:
        self._set_status(session, SessionStatus.EXPIRED)
        dropped = session.buffer.flush()
        if dropped is not None:
            self._logger.info(
                "Discarding %s buffered bytes for expired session %s", len(dropped.data), session.session_id
            )

    def _after_expiry(self, session: Session, reason: str) -> None:
        with self._lock:
            self._sessions.pop(session.session_id, None)
            self._tombstones[session.session_id] = self._clock()
        try:
            self._store.update_status(session.meeting_id, "expired")
        except OSError as exc:
            self._logger.warning("Failed to mark meeting %s expired: %s", session.meeting_id, exc)
        self._events.publish("session_expired", session.session_id, session.meeting_id, {"reason": reason})
        self._logger.info("Session expired: session=%s reason=%s", session.session_id, reason)

    def sweep_sessions(self, now: Optional[float] = None) -> dict:
        """Expire stale sessions and forget long-finished ones."""
        current = self._clock() if now is None else now
        retention = self._config.completed_retention_seconds
        with self._lock:
            sessions = list(self._sessions.values())
            for session_id, expired_at in list(self._tombstones.items()):
                if current - expired_at >= retention:
                    del self._tombstones[session_id]

        expired = 0
        removed = 0
        for session in sessions:
            reason = None
            forget = False
            with session.lock:
                reason = self._expiry_reason(session, current)
                if reason is not None:
                    self._expire_locked(session, reason)
                elif (
                    session.status == SessionStatus.COMPLETED
                    and current - session.status_changed_at >= retention
                ):
                    forget = True
            if reason is not None:
                self._after_expiry(session, reason)
                expired += 1
            elif forget:
                with self._lock:
                    self._sessions.pop(session.session_id, None)
                removed += 1
        if expired or removed:
            self._logger.info("Session sweep: expired=%s removed=%s", expired, removed)
        return {"expired": expired, "removed": removed}

    # ── waiting ────────────────────────────────────────────────────────

    def wait_for_status(
        self,
        session_id: str,
        statuses: Union[str, Iterable[str]],
        timeout: float = 10.0,
    ) -> Optional[str]:
        """Block until the session reaches one of ``statuses``; returns it or None."""
        wanted = {statuses} if isinstance(statuses, str) else set(statuses)
        deadline = time.monotonic() + timeout
        while True:
            try:
                current = self.status(session_id)["status"]
            except SessionExpired:
                current = SessionStatus.EXPIRED.value
            if current in wanted:
                return current
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            with self._changed:
                self._changed.wait(timeout=min(remaining, 0.1))
