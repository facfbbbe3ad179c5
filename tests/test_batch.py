import numpy as np
import soundfile as sf

from conftest import FakeInsights, FakeSpeech, event_types
from meetflow.services.audio_normalizer import AudioNormalizer
from meetflow.services.batch_processor import BatchProcessor
from meetflow.services.realtime import ChunkPipeline


def _processor(events, store, storage, speech=None):
    normalizer = AudioNormalizer()
    pipeline = ChunkPipeline(normalizer, speech or FakeSpeech(), FakeInsights(), store, events, storage)
    return BatchProcessor(pipeline, normalizer, storage, store, events, chunk_window=10.0)


def _recording(tmp_path, seconds: float, rate: int = 22050) -> str:
    t = np.arange(int(seconds * rate)) / rate
    path = tmp_path / "upload.wav"
    sf.write(str(path), 0.2 * np.sin(2 * np.pi * 330 * t), rate, subtype="PCM_16")
    return str(path)


def test_upload_is_processed_in_window_sized_chunks(tmp_path, events, store, storage):
    path = _recording(tmp_path, 25.0)
    meeting = store.create_meeting(source="upload", audio_path=path, processing_status="queued")

    status = _processor(events, store, storage).process(meeting["id"], path)

    assert status == "completed"
    saved = store.get_meeting(meeting["id"])
    assert saved["status"] == "completed"
    assert saved["processing_status"] == "completed"
    assert saved["processing_progress"] == 100
    assert len(saved["segments"]) == 6
    assert saved["segments"][-1]["start"] >= 20.0
    assert saved["duration"] == 25.0
    types = event_types(events)
    assert types.count("transcript_update") == 3
    assert types[-1] == "final_summary"


def test_background_submission_can_be_awaited(tmp_path, events, store, storage):
    path = _recording(tmp_path, 5.0)
    meeting = store.create_meeting(source="upload", audio_path=path)
    processor = _processor(events, store, storage)

    processor.submit(meeting["id"], path)
    assert processor.wait(meeting["id"], timeout=10)
    assert store.get_meeting(meeting["id"])["status"] == "completed"


def test_unreadable_upload_fails_with_normalization_error(tmp_path, events, store, storage):
    path = tmp_path / "empty.wav"
    path.write_bytes(b"")
    meeting = store.create_meeting(source="upload", audio_path=str(path))

    assert _processor(events, store, storage).process(meeting["id"], str(path)) == "failed"
    saved = store.get_meeting(meeting["id"])
    assert saved["status"] == "failed"
    assert saved["processing_status"] == "failed"
    errors = [e for e in events.get_events_since(0)[0] if e["type"] == "error"]
    assert errors[0]["data"]["kind"] == "normalization_failed"


def test_upload_with_no_transcribed_chunks_fails(tmp_path, events, store, storage):
    path = _recording(tmp_path, 25.0)
    meeting = store.create_meeting(source="upload", audio_path=path)

    status = _processor(events, store, storage, speech=FakeSpeech(fail_calls={1, 2, 3})).process(meeting["id"], path)

    assert status == "failed"
    assert "final_summary" not in event_types(events)
    assert store.get_meeting(meeting["id"])["status"] == "failed"
