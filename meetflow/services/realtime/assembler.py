from __future__ import annotations

import threading
from typing import Optional

from meetflow.services.realtime.models import AssemblyUpdate, Speaker, TranscriptSegment
from meetflow.services.speech_service import ChunkTranscript


SEQUENCE_STRIDE = 10000


class TranscriptAssembler:
    """Merges per-chunk results into one ordered transcript and speaker roster.

    Chunks may be applied in any order; segments are always kept sorted by
    (chunk_index, intra-chunk start), and the full text is rebuilt from that
    order on every apply.  Intra-chunk times are clipped to the chunk window
    so chunk N never reaches past the start of chunk N+1.
    """

    def __init__(self, transcript_id: str, chunk_window: float) -> None:
        self._transcript_id = transcript_id
        self._window = chunk_window
        self._lock = threading.Lock()
        self._segments: list[TranscriptSegment] = []
        self._speakers: dict[str, Speaker] = {}
        self._processed_duration = 0.0
        self._full_text = ""
        self._word_count = 0

    @property
    def full_text(self) -> str:
        with self._lock:
            return self._full_text

    @property
    def word_count(self) -> int:
        with self._lock:
            return self._word_count

    @property
    def processed_duration(self) -> float:
        with self._lock:
            return self._processed_duration

    def segments(self) -> list[TranscriptSegment]:
        with self._lock:
            return list(self._segments)

    def speakers(self) -> list[Speaker]:
        with self._lock:
            return [Speaker(**s.to_dict()) for s in self._speakers.values()]

    def speaker_context(self) -> list[dict]:
        with self._lock:
            return [
                {"label": s.label, "speaking_time": round(s.speaking_time, 2), "word_count": s.word_count}
                for s in self._speakers.values()
            ]

    def apply(self, chunk_index: int, transcript: ChunkTranscript, chunk_duration: Optional[float] = None) -> AssemblyUpdate:
        duration = chunk_duration if chunk_duration is not None else transcript.duration
        duration = max(0.0, float(duration or 0.0))
        offset = chunk_index * self._window
        limit = min(duration, self._window) if duration > 0 else self._window

        utterances = sorted(
            (u for u in transcript.utterances if u.text and u.text.strip()),
            key=lambda u: (u.start, u.end),
        )

        with self._lock:
            new_segments: list[TranscriptSegment] = []
            touched: dict[str, Speaker] = {}
            covered_until = 0.0

            for position, utterance in enumerate(utterances):
                start = min(max(0.0, utterance.start), limit)
                end = min(max(start, utterance.end), limit)

                segment = TranscriptSegment(
                    transcript_id=self._transcript_id,
                    speaker_label=utterance.speaker_label,
                    text=utterance.text.strip(),
                    start=offset + start,
                    end=offset + end,
                    confidence=float(utterance.confidence),
                    sequence_index=chunk_index * SEQUENCE_STRIDE + position,
                    chunk_index=chunk_index,
                    intra_start=start,
                )
                new_segments.append(segment)

                # Overlapping utterances only count once toward speaking time.
                speaking = max(0.0, end - max(start, covered_until))
                covered_until = max(covered_until, end)

                if utterance.speaker_label is None:
                    continue
                speaker = self._speakers.get(utterance.speaker_label)
                if speaker is None:
                    speaker = Speaker(label=utterance.speaker_label)
                    self._speakers[speaker.label] = speaker
                words = len(utterance.words) or len(segment.text.split())
                speaker.speaking_time += speaking
                speaker.word_count += words
                speaker.confidence = (
                    speaker.confidence * speaker.utterance_count + float(utterance.confidence)
                ) / (speaker.utterance_count + 1)
                speaker.utterance_count += 1
                touched[speaker.label] = speaker

            self._segments.extend(new_segments)
            self._segments.sort(key=lambda s: (s.chunk_index, s.intra_start, s.sequence_index))
            self._processed_duration += duration
            self._full_text = " ".join(s.text for s in self._segments)
            self._word_count = len(self._full_text.split())

            confidence = (
                sum(s.confidence for s in new_segments) / len(new_segments) if new_segments else 0.0
            )
            return AssemblyUpdate(
                chunk_index=chunk_index,
                new_segments=new_segments,
                speakers=[Speaker(**s.to_dict()) for s in touched.values()],
                confidence=confidence,
                full_text=self._full_text,
                word_count=self._word_count,
            )
