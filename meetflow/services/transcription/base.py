from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Word:
    text: str
    start: float
    end: float
    confidence: float = 1.0


@dataclass(frozen=True)
class TimedSpan:
    """A provider-side segment of text with timing but no speaker."""

    start: float
    end: float
    text: str
    confidence: float = 1.0


@dataclass(frozen=True)
class TranscriptionResult:
    text: str
    language: Optional[str]
    duration: float
    words: list[Word] = field(default_factory=list)
    spans: list[TimedSpan] = field(default_factory=list)


@dataclass(frozen=True)
class TranscriptionConfig:
    provider: str  # "openai" or "assemblyai"
    api_key: Optional[str]
    base_url: str
    model: str
    language: Optional[str]
    prompt: Optional[str]


_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com",
    "assemblyai": "https://api.assemblyai.com",
}

_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "assemblyai": "ASSEMBLYAI_API_KEY",
}


def resolve_api_key(provider: str, configured: Optional[str]) -> Optional[str]:
    if configured:
        return configured
    env_var = _KEY_ENV_VARS.get(provider)
    return os.environ.get(env_var) if env_var else None


def default_base_url(provider: str) -> str:
    return _DEFAULT_BASE_URLS.get(provider, "")


def parse_transcription_config(config_dict: dict) -> TranscriptionConfig:
    """Parse the ``speech.transcription`` section of config.json."""
    provider = str(config_dict.get("provider", "openai")).lower()
    return TranscriptionConfig(
        provider=provider,
        api_key=resolve_api_key(provider, config_dict.get("api_key")),
        base_url=str(config_dict.get("base_url") or default_base_url(provider)).rstrip("/"),
        model=str(config_dict.get("model", "whisper-1")),
        language=config_dict.get("language", "en") or None,
        prompt=config_dict.get("prompt") or None,
    )


class TranscriptionGateway(ABC):
    @abstractmethod
    def transcribe(self, audio_path: str) -> TranscriptionResult:
        """Transcribe one normalized audio file; times are in seconds."""
        raise NotImplementedError
