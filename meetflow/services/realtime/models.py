from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from meetflow.services.chunk_storage import ChunkHandle


class SessionStatus(str, Enum):
    ACTIVE = "active"
    FLUSHING = "flushing"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Chunk:
    session_id: str
    meeting_id: str
    chunk_index: int
    byte_length: int
    start_offset: float
    end_offset: float
    handle: ChunkHandle
    forced: bool = False
    client_timestamp: Optional[float] = None


@dataclass
class TranscriptSegment:
    transcript_id: str
    speaker_label: Optional[str]
    text: str
    start: float
    end: float
    confidence: float
    sequence_index: int
    chunk_index: int
    intra_start: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Speaker:
    label: str
    speaking_time: float = 0.0
    word_count: int = 0
    confidence: float = 0.0
    utterance_count: int = 0
    display_name: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AssemblyUpdate:
    """What one chunk changed in the running transcript."""

    chunk_index: int
    new_segments: list[TranscriptSegment] = field(default_factory=list)
    speakers: list[Speaker] = field(default_factory=list)
    confidence: float = 0.0
    full_text: str = ""
    word_count: int = 0

    def to_event(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "new_segments": [s.to_dict() for s in self.new_segments],
            "speakers": [s.to_dict() for s in self.speakers],
            "confidence": self.confidence,
        }
