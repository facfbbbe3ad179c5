import pytest

from meetflow.services.diarization import DiarizationResult, DiarizationService, Utterance, parse_diarization_config
from meetflow.services.resilience import GatewayUnavailable
from meetflow.services.speech_service import SpeechService, attribute_words, parse_speech_config
from meetflow.services.transcription import TimedSpan, TranscriptionGateway, TranscriptionResult, Word


WORDS = [
    Word("good", 0.0, 0.4, 0.9),
    Word("morning", 0.5, 1.0, 0.9),
    Word("hi", 2.0, 2.3, 0.8),
    Word("there", 2.4, 2.8, 0.8),
    Word("okay", 9.0, 9.5, 0.7),
]


class StaticTranscriber(TranscriptionGateway):
    def __init__(self) -> None:
        self.calls = 0

    def transcribe(self, audio_path):
        self.calls += 1
        return TranscriptionResult(
            text="good morning hi there okay",
            language="en",
            duration=12.0,
            words=WORDS,
            spans=[TimedSpan(0.0, 1.0, "good morning"), TimedSpan(2.0, 9.5, "hi there okay")],
        )


class StaticDiarizer:
    def __init__(self, error=None) -> None:
        self.error = error
        self.calls = 0

    def diarize(self, audio_path):
        self.calls += 1
        if self.error:
            raise self.error
        return DiarizationResult(
            utterances=[
                Utterance("A", "good morning", 0.0, 1.5),
                Utterance("B", "hi there", 1.5, 3.0),
            ]
        )


def _service(invoker, diarizer, min_seconds=10.0):
    config = parse_speech_config({"speech": {"mode": "split", "transcription": {"api_key": "k"}}})
    diarization = DiarizationService(
        parse_diarization_config({"provider": "assemblyai", "api_key": "k"}), invoker, provider=diarizer
    )
    return SpeechService(
        config,
        invoker,
        min_diarization_seconds=min_seconds,
        transcriber=StaticTranscriber(),
        diarization=diarization,
    )


def test_words_follow_diarized_boundaries():
    utterances = attribute_words(
        WORDS,
        [Utterance("A", "", 0.0, 1.5), Utterance("B", "", 1.5, 3.0)],
    )
    assert [(u.speaker_label, u.text) for u in utterances] == [
        ("A", "good morning"),
        ("B", "hi there"),
        (None, "okay"),
    ]
    assert utterances[2].start == 9.0
    assert sum(len(u.words) for u in utterances) == len(WORDS)


def test_split_mode_attributes_speakers(invoker):
    diarizer = StaticDiarizer()
    result = _service(invoker, diarizer).process("chunk.wav", 12.0)
    assert diarizer.calls == 1
    assert [u.speaker_label for u in result.utterances] == ["A", "B", None]
    assert result.text == "good morning hi there okay"


def test_short_chunks_skip_diarization(invoker):
    diarizer = StaticDiarizer()
    result = _service(invoker, diarizer).process("chunk.wav", 8.0)
    assert diarizer.calls == 0
    assert [u.text for u in result.utterances] == ["good morning", "hi there okay"]
    assert all(u.speaker_label is None for u in result.utterances)


def test_diarization_failure_keeps_transcript(invoker):
    diarizer = StaticDiarizer(error=GatewayUnavailable("down"))
    result = _service(invoker, diarizer).process("chunk.wav", 12.0)
    assert len(result.utterances) == 2
    assert all(u.speaker_label is None for u in result.utterances)


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        parse_speech_config({"speech": {"mode": "local"}})
    assert parse_speech_config({}).mode == "split"
