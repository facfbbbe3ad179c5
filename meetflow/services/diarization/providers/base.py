from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from meetflow.services.transcription.base import Word, default_base_url, resolve_api_key


@dataclass(frozen=True)
class Utterance:
    """One continuous stretch of speech from a single speaker, times in seconds."""

    speaker_label: Optional[str]
    text: str
    start: float
    end: float
    confidence: float = 1.0
    words: list[Word] = field(default_factory=list)


@dataclass(frozen=True)
class DiarizationResult:
    utterances: list[Utterance]
    duration: float = 0.0


@dataclass(frozen=True)
class DiarizationConfig:
    enabled: bool
    provider: str  # "assemblyai" or "none"
    api_key: Optional[str]
    base_url: str
    min_speakers: int
    max_speakers: int


def parse_diarization_config(config_dict: dict) -> DiarizationConfig:
    """Parse the ``speech.diarization`` section of config.json.

    Example:
        {"enabled": true, "provider": "assemblyai", "min_speakers": 1, "max_speakers": 6}
    """
    provider = str(config_dict.get("provider", "assemblyai")).lower()
    min_speakers = max(1, int(config_dict.get("min_speakers", 1)))
    max_speakers = max(min_speakers, int(config_dict.get("max_speakers", 6)))
    return DiarizationConfig(
        enabled=bool(config_dict.get("enabled", True)) and provider != "none",
        provider=provider,
        api_key=resolve_api_key(provider, config_dict.get("api_key")),
        base_url=str(config_dict.get("base_url") or default_base_url(provider)).rstrip("/"),
        min_speakers=min_speakers,
        max_speakers=max_speakers,
    )


class DiarizationProvider(Protocol):
    def diarize(self, audio_path: str) -> DiarizationResult:
        ...
