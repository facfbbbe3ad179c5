import threading
from typing import Optional

import numpy as np
import pytest

from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.diarization import Utterance
from meetflow.services.event_bus import EventBus
from meetflow.services.insights import ActionItem, ExtractionFailed
from meetflow.services.meeting_store import MeetingStore
from meetflow.services.resilience import GatewayUnavailable, ResilientInvoker, RetryConfig
from meetflow.services.speech_service import ChunkTranscript
from meetflow.services.transcription import Word


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


class FakeSpeech:
    """Returns one transcript per call, alternating speakers A and B over
    equal slices of the chunk; selected calls fail."""

    def __init__(self, fail_calls: Optional[set] = None, utterances: int = 2) -> None:
        self.fail_calls = fail_calls or set()
        self.utterances = utterances
        self.calls = 0
        self._lock = threading.Lock()

    def process(self, audio_path: str, duration: float) -> ChunkTranscript:
        with self._lock:
            self.calls += 1
            call = self.calls
        if call in self.fail_calls:
            raise GatewayUnavailable("provider is down", 503)
        lines = [f"Alice will send the budget report {call}.", f"Bob reviews the contract {call}."]
        step = duration / self.utterances
        utterances = []
        for k in range(self.utterances):
            start = k * step
            text = lines[k % 2]
            utterances.append(
                Utterance("AB"[k % 2], text, start, start + step, 0.9 if k % 2 == 0 else 0.8,
                          [Word(text.split()[0], start, start + 0.2)])
            )
        return ChunkTranscript(
            text=" ".join(u.text for u in utterances),
            language="en",
            duration=duration,
            words=[],
            utterances=utterances,
        )


class FakeInsights:
    def __init__(self, fail_extraction: bool = False, fail_analysis: bool = False) -> None:
        self.fail_extraction = fail_extraction
        self.fail_analysis = fail_analysis
        self.extract_calls: list[str] = []
        self.analysis_calls: list[str] = []

    def extract_action_items(self, text, speaker_context=None, chunk_index=None, context_timestamp=None):
        self.extract_calls.append(text)
        if self.fail_extraction:
            raise ExtractionFailed("llm unavailable")
        return [
            ActionItem(
                title="Send the budget report",
                assignee="Alice",
                confidence=0.9,
                source_chunk=chunk_index,
                context_timestamp=context_timestamp,
            )
        ]

    def analyze_meeting(self, text, context=None):
        self.analysis_calls.append(text)
        if self.fail_analysis:
            raise ExtractionFailed("llm unavailable")
        return {
            "summary": "Budget and contract review.",
            "key_points": ["Budget report is due"],
            "decisions": [],
            "topics": ["budget"],
            "sentiment": {"overall": "positive"},
            "action_items": [ActionItem(title="Review the contract", assignee="Bob")],
        }


def pcm_tone(seconds: float, sample_rate: int = 16000, channels: int = 1, freq: float = 440.0) -> bytes:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    samples = (0.3 * np.sin(2 * np.pi * freq * t) * 32767).astype("<i2")
    if channels > 1:
        samples = np.repeat(samples[:, None], channels, axis=1)
    return samples.tobytes()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def invoker(sleeps) -> ResilientInvoker:
    return ResilientInvoker(
        RetryConfig(max_attempts=3, base_delay_seconds=0.5, poll_interval_seconds=1.0, max_poll_attempts=5),
        sleep=sleeps.append,
    )


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def store(tmp_path) -> MeetingStore:
    return MeetingStore(str(tmp_path / "meetings"))


@pytest.fixture
def storage(tmp_path) -> ChunkStorage:
    return ChunkStorage(str(tmp_path / "chunks"))


def event_types(bus: EventBus, session_id: Optional[str] = None) -> list[str]:
    events, _ = bus.get_events_since(0)
    return [e["type"] for e in events if session_id is None or e["session_id"] == session_id]
