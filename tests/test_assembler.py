import itertools

import pytest

from meetflow.services.diarization import Utterance
from meetflow.services.realtime.assembler import SEQUENCE_STRIDE, TranscriptAssembler
from meetflow.services.speech_service import ChunkTranscript


def _transcript(chunk: int, duration: float = 90.0) -> ChunkTranscript:
    utterances = [
        Utterance("A", f"chunk {chunk} alpha", 0.0, 30.0, 0.9),
        Utterance("B", f"chunk {chunk} beta", 30.0, 60.0, 0.7),
        Utterance(None, f"chunk {chunk} gamma", 60.0, 90.0, 0.5),
    ]
    return ChunkTranscript(
        text=" ".join(u.text for u in utterances),
        language="en",
        duration=duration,
        utterances=utterances,
    )


def test_absolute_times_and_sequence_indices():
    assembler = TranscriptAssembler("t1", 90.0)
    update = assembler.apply(2, _transcript(2), 90.0)

    starts = [s.start for s in update.new_segments]
    assert starts == [180.0, 210.0, 240.0]
    assert [s.sequence_index for s in update.new_segments] == [
        2 * SEQUENCE_STRIDE,
        2 * SEQUENCE_STRIDE + 1,
        2 * SEQUENCE_STRIDE + 2,
    ]
    assert update.new_segments[2].speaker_label is None
    assert {s.label for s in update.speakers} == {"A", "B"}


@pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
def test_order_of_application_does_not_change_transcript(order):
    reference = TranscriptAssembler("t", 90.0)
    for index in range(4):
        reference.apply(index, _transcript(index))

    shuffled = TranscriptAssembler("t", 90.0)
    for index in order:
        shuffled.apply(index, _transcript(index))

    assert shuffled.full_text == reference.full_text
    assert [s.sequence_index for s in shuffled.segments()] == [s.sequence_index for s in reference.segments()]
    assert shuffled.full_text.startswith("chunk 0 alpha")


def test_utterances_are_clipped_to_chunk_duration():
    assembler = TranscriptAssembler("t", 10.0)
    transcript = ChunkTranscript(
        text="late words",
        language="en",
        duration=8.0,
        utterances=[Utterance("A", "late words", 5.0, 12.0, 1.0)],
    )
    update = assembler.apply(1, transcript, 8.0)
    segment = update.new_segments[0]
    assert segment.start == 15.0
    assert segment.end == 18.0
    assert assembler.speakers()[0].speaking_time == pytest.approx(3.0)


def test_overlong_chunk_is_clipped_to_the_window():
    assembler = TranscriptAssembler("t", 10.0)
    long_chunk = ChunkTranscript(
        text="a b c d",
        language="en",
        duration=15.0,
        utterances=[
            Utterance("A", "a", 0.0, 3.75, 1.0),
            Utterance("B", "b", 3.75, 7.5, 1.0),
            Utterance("A", "c", 7.5, 11.25, 1.0),
            Utterance("B", "d", 11.25, 15.0, 1.0),
        ],
    )
    assembler.apply(0, long_chunk, 15.0)
    assembler.apply(1, _transcript(1, duration=10.0), 10.0)

    starts = [s.start for s in assembler.segments()]
    assert starts[:4] == [0.0, 3.75, 7.5, 10.0]
    assert starts == sorted(starts)
    assert max(s.end for s in assembler.segments() if s.chunk_index == 0) == 10.0


def test_overlapping_speech_counts_once():
    assembler = TranscriptAssembler("t", 90.0)
    transcript = ChunkTranscript(
        text="one two",
        language="en",
        duration=20.0,
        utterances=[
            Utterance("A", "one", 0.0, 10.0, 1.0),
            Utterance("B", "two", 5.0, 15.0, 1.0),
        ],
    )
    assembler.apply(0, transcript, 20.0)

    total = sum(s.speaking_time for s in assembler.speakers())
    assert total == pytest.approx(15.0)
    assert total <= assembler.processed_duration


def test_speaker_stats_accumulate_across_chunks():
    assembler = TranscriptAssembler("t", 90.0)
    assembler.apply(0, _transcript(0))
    assembler.apply(1, _transcript(1))

    speakers = {s.label: s for s in assembler.speakers()}
    assert speakers["A"].utterance_count == 2
    assert speakers["A"].word_count == 6
    assert speakers["A"].speaking_time == pytest.approx(60.0)
    assert speakers["B"].confidence == pytest.approx(0.7)
    assert assembler.word_count == len(assembler.full_text.split())
    assert assembler.processed_duration == pytest.approx(180.0)


def test_empty_chunk_adds_nothing_but_duration():
    assembler = TranscriptAssembler("t", 90.0)
    update = assembler.apply(0, ChunkTranscript(text="", language=None, duration=90.0), 90.0)
    assert update.new_segments == []
    assert update.confidence == 0.0
    assert assembler.full_text == ""
    assert assembler.processed_duration == 90.0
