from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from meetflow.services.diarization import (
    AssemblyAIProvider,
    DiarizationConfig,
    DiarizationError,
    DiarizationService,
    Utterance,
    parse_diarization_config,
)
from meetflow.services.resilience import GatewayError, ResilientInvoker
from meetflow.services.transcription import (
    OpenAIWhisperGateway,
    TranscriptionConfig,
    TranscriptionGateway,
    TranscriptionResult,
    Word,
    parse_transcription_config,
)


@dataclass(frozen=True)
class SpeechConfig:
    mode: str  # "split" or "combined"
    transcription: TranscriptionConfig
    diarization: DiarizationConfig


def parse_speech_config(data: dict) -> SpeechConfig:
    raw = data.get("speech", {}) if isinstance(data, dict) else {}
    if not isinstance(raw, dict):
        raw = {}
    mode = str(raw.get("mode", "split")).lower()
    if mode not in ("split", "combined"):
        raise ValueError(f"Unsupported speech mode: {mode}")
    transcription = raw.get("transcription", {})
    diarization = raw.get("diarization", {})
    return SpeechConfig(
        mode=mode,
        transcription=parse_transcription_config(transcription if isinstance(transcription, dict) else {}),
        diarization=parse_diarization_config(diarization if isinstance(diarization, dict) else {}),
    )


@dataclass(frozen=True)
class ChunkTranscript:
    text: str
    language: Optional[str]
    duration: float
    words: list[Word] = field(default_factory=list)
    utterances: list[Utterance] = field(default_factory=list)


def _contains(utterance: Utterance, t: float) -> bool:
    return utterance.start <= t < utterance.end


def attribute_words(words: list[Word], utterances: list[Utterance]) -> list[Utterance]:
    """Re-cut transcribed words along diarized utterance boundaries.

    A word belongs to the first utterance whose ``[start, end)`` contains the
    word's start.  Runs of words outside every utterance become speakerless
    utterances so no transcribed text is lost.
    """
    if not words:
        return list(utterances)
    ordered = sorted(utterances, key=lambda u: (u.start, u.end))
    runs: list[tuple[Optional[Utterance], list[Word]]] = []
    for word in sorted(words, key=lambda w: w.start):
        owner = next((u for u in ordered if _contains(u, word.start)), None)
        if runs and runs[-1][0] is owner:
            runs[-1][1].append(word)
        else:
            runs.append((owner, [word]))

    result = []
    for owner, run in runs:
        text = " ".join(w.text for w in run)
        confidence = sum(w.confidence for w in run) / len(run)
        if owner is None:
            result.append(
                Utterance(
                    speaker_label=None,
                    text=text,
                    start=run[0].start,
                    end=run[-1].end,
                    confidence=confidence,
                    words=run,
                )
            )
        else:
            result.append(
                Utterance(
                    speaker_label=owner.speaker_label,
                    text=text,
                    start=owner.start,
                    end=owner.end,
                    confidence=confidence,
                    words=run,
                )
            )
    return result


def speakerless_utterances(result: TranscriptionResult, duration: float) -> list[Utterance]:
    if result.spans:
        return [
            Utterance(
                speaker_label=None,
                text=span.text,
                start=span.start,
                end=span.end,
                confidence=span.confidence,
                words=[w for w in result.words if span.start <= w.start < span.end],
            )
            for span in result.spans
        ]
    if not result.text:
        return []
    confidence = (
        sum(w.confidence for w in result.words) / len(result.words) if result.words else 1.0
    )
    return [
        Utterance(
            speaker_label=None,
            text=result.text,
            start=0.0,
            end=duration or result.duration,
            confidence=confidence,
            words=list(result.words),
        )
    ]


class SpeechService:
    """Transcription plus speaker attribution for one normalized audio file.

    ``combined`` mode makes a single AssemblyAI call that returns both.
    ``split`` mode transcribes with the configured provider and diarizes
    separately; diarization problems only cost speaker labels.
    """

    def __init__(
        self,
        config: SpeechConfig,
        invoker: ResilientInvoker,
        min_diarization_seconds: float = 10.0,
        transcriber: Optional[TranscriptionGateway] = None,
        diarization: Optional[DiarizationService] = None,
        combined: Optional[AssemblyAIProvider] = None,
    ) -> None:
        self._config = config
        self._invoker = invoker
        self._min_diarization_seconds = min_diarization_seconds
        self._logger = logging.getLogger("meetflow.speech")
        language = config.transcription.language
        self._transcriber = transcriber or self._build_transcriber(config.transcription)
        self._diarization = diarization or DiarizationService(config.diarization, invoker, language=language)
        self._combined = combined

    @property
    def mode(self) -> str:
        return self._config.mode

    def _build_transcriber(self, config: TranscriptionConfig) -> TranscriptionGateway:
        if config.provider == "openai":
            return OpenAIWhisperGateway(config, self._invoker)
        if config.provider == "assemblyai":
            return AssemblyAIProvider(
                api_key=config.api_key,
                invoker=self._invoker,
                base_url=config.base_url,
                language=config.language,
            )
        raise ValueError(f"Unsupported transcription provider: {config.provider}")

    def _combined_provider(self) -> AssemblyAIProvider:
        if self._combined is None:
            diarization = self._config.diarization
            transcription = self._config.transcription
            if transcription.provider == "assemblyai":
                api_key, base_url = transcription.api_key, transcription.base_url
            else:
                api_key, base_url = diarization.api_key, diarization.base_url
            self._combined = AssemblyAIProvider(
                api_key=api_key,
                invoker=self._invoker,
                base_url=base_url or "https://api.assemblyai.com",
                language=transcription.language,
                min_speakers=diarization.min_speakers,
                max_speakers=diarization.max_speakers,
            )
        return self._combined

    def process(self, audio_path: str, duration: float) -> ChunkTranscript:
        """Raises GatewayError when transcription itself fails."""
        if self._config.mode == "combined":
            transcription, diarized = self._combined_provider().transcribe_with_speakers(audio_path)
            utterances = list(diarized.utterances) or speakerless_utterances(transcription, duration)
            return self._build(transcription, utterances, duration)

        transcription = self._transcriber.transcribe(audio_path)
        utterances: list[Utterance] = []
        if self._diarization.is_enabled() and duration > self._min_diarization_seconds:
            try:
                diarized = self._diarization.run(audio_path)
                utterances = attribute_words(transcription.words, diarized.utterances)
            except (GatewayError, DiarizationError) as exc:
                self._logger.warning("Diarization skipped for %s: %s", audio_path, exc)
                utterances = []
        if not utterances:
            utterances = speakerless_utterances(transcription, duration)
        return self._build(transcription, utterances, duration)

    @staticmethod
    def _build(transcription: TranscriptionResult, utterances: list[Utterance], duration: float) -> ChunkTranscript:
        return ChunkTranscript(
            text=transcription.text,
            language=transcription.language,
            duration=duration or transcription.duration,
            words=list(transcription.words),
            utterances=utterances,
        )
