import asyncio
import base64
import binascii
import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from meetflow.services.event_bus import EventBus
from meetflow.services.realtime import SessionExpired, SessionNotFound, SessionRegistry


class StartSessionRequest(BaseModel):
    session_hint: Optional[str] = Field(None, description="Client-chosen session id, used if free")
    meeting_title: Optional[str] = Field(None, description="Title for the meeting record")
    user_id: Optional[str] = Field(None, description="Owning user, stored on the meeting")


class AudioChunkRequest(BaseModel):
    audio_data: str = Field(..., description="Base64-encoded audio bytes (raw PCM or a container)")
    client_timestamp: Optional[float] = Field(None, description="Client clock when the fragment was captured")
    chunk_sequence_hint: Optional[int] = Field(None, description="Client fragment counter")
    forced_flush: bool = Field(False, description="Seal the current chunk immediately")


def _decode_audio(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("audio_data is not valid base64") from exc


def create_realtime_router(registry: SessionRegistry, events: EventBus) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("meetflow.api.realtime")

    def call(name: str, fn: Callable[[], Any]) -> Any:
        start_time = time.perf_counter()
        try:
            result = fn()
            logger.debug("%s completed in %.2f ms", name, (time.perf_counter() - start_time) * 1000)
            return result
        except SessionExpired as exc:
            raise HTTPException(status_code=410, detail=str(exc)) from exc
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            logger.warning("%s rejected: %s", name, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception("%s error in %.2f ms: %s", name, duration_ms, exc)
            raise HTTPException(status_code=500, detail="Internal Server Error") from exc

    @router.post("/api/realtime/sessions")
    def start_session(payload: StartSessionRequest) -> dict:
        return call(
            "start_session",
            lambda: registry.start(
                session_hint=payload.session_hint,
                meeting_title=payload.meeting_title,
                user_id=payload.user_id,
            ),
        )

    @router.get("/api/realtime/sessions")
    def list_sessions() -> list[dict]:
        return call("list_sessions", registry.list_sessions)

    @router.get("/api/realtime/events")
    def realtime_events(
        cursor: Optional[int] = Query(None, description="Absolute event sequence to resume from"),
        session_id: Optional[str] = Query(None, description="Only events for this session"),
    ) -> StreamingResponse:
        logger.info("Realtime SSE connected: session=%s cursor=%s", session_id, cursor)

        def event_stream():
            position = events.head() if cursor is None else cursor
            while True:
                # Block until events are available; time out for a heartbeat
                batch, position = events.wait_for_events(position, timeout=5.0)
                sent = False
                for event in batch:
                    if session_id and event.get("session_id") != session_id:
                        continue
                    sent = True
                    yield f"id: {event['seq']}\ndata: {json.dumps(event)}\n\n"
                if not sent:
                    yield "data: {\"type\":\"heartbeat\"}\n\n"

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    @router.get("/api/realtime/sessions/{session_id}")
    def session_status(session_id: str) -> dict:
        return call("session_status", lambda: registry.status(session_id))

    @router.post("/api/realtime/sessions/{session_id}/audio")
    def append_audio(session_id: str, payload: AudioChunkRequest) -> dict:
        return call(
            "append_audio",
            lambda: registry.append_audio(
                session_id,
                _decode_audio(payload.audio_data),
                client_timestamp=payload.client_timestamp,
                forced_flush=payload.forced_flush,
                chunk_sequence_hint=payload.chunk_sequence_hint,
            ),
        )

    @router.post("/api/realtime/sessions/{session_id}/stop")
    def stop_session(session_id: str) -> dict:
        return call("stop_session", lambda: registry.stop(session_id))

    @router.websocket("/ws/realtime")
    async def realtime_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        outbound: asyncio.Queue = asyncio.Queue()
        owned: set[str] = set()
        current: dict[str, Optional[str]] = {"session_id": None}
        logger.info("Realtime socket connected: %s", connection_id)

        def on_event(event: dict) -> None:
            if event.get("session_id") in owned:
                loop.call_soon_threadsafe(outbound.put_nowait, event)

        async def pump() -> None:
            while True:
                frame = await outbound.get()
                await websocket.send_json(frame)

        def reply(frame: dict) -> None:
            outbound.put_nowait(frame)

        def fail(kind: str, message: str) -> None:
            reply({"type": "error", "data": {"chunk_index": None, "kind": kind, "message": message}})

        async def handle_control(message) -> None:
            if not isinstance(message, dict):
                fail("bad_request", "Control frames must be JSON objects")
                return
            frame_type = message.get("type")
            session_id = message.get("session_id") or current["session_id"]
            if frame_type == "start":
                result = await run_in_threadpool(
                    registry.start,
                    message.get("session_hint"),
                    message.get("meeting_title"),
                    connection_id,
                    message.get("user_id"),
                )
                owned.add(result["session_id"])
                current["session_id"] = result["session_id"]
                reply({"type": "session_started", "data": result})
                # recording_started was published before this connection owned the session.
                for event in events.events_for_session(result["session_id"]):
                    if event["type"] == "recording_started" and event["meeting_id"] == result["meeting_id"]:
                        reply(event)
                return
            if not session_id:
                fail("session_not_found", "No session started on this connection")
                return
            if frame_type == "audio_chunk":
                await run_in_threadpool(
                    lambda: registry.append_audio(
                        session_id,
                        _decode_audio(message.get("audio_data") or ""),
                        client_timestamp=message.get("client_timestamp"),
                        forced_flush=bool(message.get("forced_flush", False)),
                        chunk_sequence_hint=message.get("chunk_sequence_hint"),
                    )
                )
            elif frame_type == "stop":
                snapshot = await run_in_threadpool(registry.stop, session_id)
                reply({"type": "status", "data": snapshot})
            elif frame_type == "status":
                snapshot = await run_in_threadpool(registry.status, session_id)
                reply({"type": "status", "data": snapshot})
            else:
                fail("bad_request", f"Unknown frame type: {frame_type}")

        events.subscribe(on_event)
        sender = asyncio.create_task(pump())
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                try:
                    if message.get("bytes") is not None:
                        if not current["session_id"]:
                            fail("session_not_found", "No session started on this connection")
                            continue
                        await run_in_threadpool(registry.append_audio, current["session_id"], message["bytes"])
                    elif message.get("text") is not None:
                        await handle_control(json.loads(message["text"]))
                except SessionExpired as exc:
                    fail("session_expired", str(exc))
                except SessionNotFound as exc:
                    fail("session_not_found", str(exc))
                except ValueError as exc:
                    fail("bad_request", str(exc))
        except WebSocketDisconnect:
            pass
        finally:
            events.unsubscribe(on_event)
            sender.cancel()
            await run_in_threadpool(registry.connection_lost, connection_id)
            logger.info("Realtime socket closed: %s", connection_id)

    return router
