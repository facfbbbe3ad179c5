import base64
import io

import numpy as np
import pytest
import soundfile as sf
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import FakeInsights, FakeSpeech, pcm_tone
from meetflow.context import AppContext
from meetflow.main import create_app
from meetflow.routers.realtime import create_realtime_router
from meetflow.routers.uploads import create_uploads_router
from meetflow.services.audio_normalizer import AudioNormalizer
from meetflow.services.batch_processor import BatchProcessor
from meetflow.services.realtime import ChunkPipeline, RealtimeConfig, SessionRegistry, WorkerPool


@pytest.fixture
def services(tmp_path, clock, events, store, storage):
    normalizer = AudioNormalizer()
    pipeline = ChunkPipeline(normalizer, FakeSpeech(), FakeInsights(), store, events, storage)
    pool = WorkerPool(worker_count=2, queue_size=16)
    pool.start()
    config = RealtimeConfig(chunk_window_seconds=10.0, idle_timeout_seconds=60)
    registry = SessionRegistry(config, pipeline, pool, storage, store, events, clock=clock)
    batch = BatchProcessor(pipeline, normalizer, storage, store, events, chunk_window=10.0)
    ctx = AppContext(cwd=str(tmp_path), data_dir=str(tmp_path / "data"), config_path=str(tmp_path / "config.json"))
    ctx.ensure_dirs()

    app = FastAPI()
    app.include_router(create_realtime_router(registry, events))
    app.include_router(create_uploads_router(ctx, store, batch))
    yield {"client": TestClient(app), "registry": registry, "batch": batch, "clock": clock}
    pool.stop()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_session_lifecycle_over_http(services):
    client = services["client"]
    response = client.post("/api/realtime/sessions", json={"meeting_title": "Standup", "session_hint": "desk-7"})
    assert response.status_code == 200
    session_id = response.json()["session_id"]
    assert session_id == "desk-7"

    response = client.post(
        f"/api/realtime/sessions/{session_id}/audio",
        json={"audio_data": _b64(pcm_tone(1.0)), "chunk_sequence_hint": 1},
    )
    assert response.status_code == 200
    assert response.json()["buffered_bytes"] == 32000

    response = client.post(
        f"/api/realtime/sessions/{session_id}/audio",
        json={"audio_data": _b64(pcm_tone(1.0)), "forced_flush": True},
    )
    assert response.json()["chunks_sealed"] == 1

    assert client.get(f"/api/realtime/sessions/{session_id}").json()["status"] == "active"
    assert [s["session_id"] for s in client.get("/api/realtime/sessions").json()] == [session_id]

    assert client.post(f"/api/realtime/sessions/{session_id}/stop").status_code == 200
    assert services["registry"].wait_for_status(session_id, "completed", timeout=10) == "completed"
    assert client.get(f"/api/realtime/sessions/{session_id}").json()["chunks_processed"] == 1


def test_error_mapping(services):
    client = services["client"]
    assert client.get("/api/realtime/sessions/missing").status_code == 404

    session_id = client.post("/api/realtime/sessions", json={}).json()["session_id"]
    response = client.post(f"/api/realtime/sessions/{session_id}/audio", json={"audio_data": "not base64!"})
    assert response.status_code == 400

    client.post(f"/api/realtime/sessions/{session_id}/audio", json={"audio_data": _b64(pcm_tone(0.1))})
    services["clock"].advance(60)
    services["registry"].sweep_sessions()
    assert client.get(f"/api/realtime/sessions/{session_id}").status_code == 410
    response = client.post(f"/api/realtime/sessions/{session_id}/audio", json={"audio_data": _b64(pcm_tone(0.1))})
    assert response.status_code == 410


def test_websocket_streams_session_events(services):
    client = services["client"]
    with client.websocket_connect("/ws/realtime") as ws:
        ws.send_json({"type": "start", "meeting_title": "Socket"})
        started = ws.receive_json()
        assert started["type"] == "session_started"
        session_id = started["data"]["session_id"]
        announced = ws.receive_json()
        assert announced["type"] == "recording_started"
        assert announced["session_id"] == session_id
        assert announced["data"]["chunk_window"] == 10.0

        ws.send_bytes(pcm_tone(1.0))
        ws.send_json({"type": "audio_chunk", "audio_data": _b64(pcm_tone(1.0))})
        ws.send_json({"type": "stop"})

        seen = []
        while True:
            frame = ws.receive_json()
            seen.append(frame["type"])
            if frame["type"] == "recording_stopped":
                break
            assert frame.get("session_id", session_id) == session_id

    assert "status" in seen
    assert "transcript_update" in seen
    assert seen.index("final_summary") < seen.index("recording_stopped")


def test_websocket_rejects_audio_before_start(services):
    client = services["client"]
    with client.websocket_connect("/ws/realtime") as ws:
        ws.send_bytes(pcm_tone(0.1))
        frame = ws.receive_json()
        assert frame["type"] == "error"
        assert frame["data"]["kind"] == "session_not_found"

        ws.send_json({"type": "nonsense"})
        assert ws.receive_json()["data"]["kind"] == "session_not_found"

        ws.send_text("[]")
        assert ws.receive_json()["data"]["kind"] == "bad_request"

        ws.send_json({"type": "start"})
        assert ws.receive_json()["type"] == "session_started"


def test_upload_runs_batch_processing(services):
    client = services["client"]
    rate = 16000
    t = np.arange(12 * rate) / rate
    buf = io.BytesIO()
    sf.write(buf, 0.2 * np.sin(2 * np.pi * 300 * t), rate, format="WAV", subtype="PCM_16")

    response = client.post(
        "/api/uploads/audio",
        files={"file": ("team call.wav", buf.getvalue(), "audio/wav")},
        data={"title": "Team call"},
    )
    assert response.status_code == 200
    meeting_id = response.json()["meeting_id"]

    assert services["batch"].wait(meeting_id, timeout=10)
    status = client.get(f"/api/uploads/{meeting_id}").json()
    assert status["processing_status"] == "completed"
    assert status["processing_progress"] == 100
    assert client.get("/api/uploads/unknown").status_code == 404


def test_empty_upload_is_rejected(services):
    response = services["client"].post("/api/uploads/audio", files={"file": ("empty.wav", b"", "audio/wav")})
    assert response.status_code == 400


def test_app_factory_boots(tmp_path):
    app = create_app(cwd=str(tmp_path))
    with TestClient(app) as client:
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["Cache-Control"].startswith("no-cache")
    assert (tmp_path / "data" / "meetings").is_dir()
