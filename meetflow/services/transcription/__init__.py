from meetflow.services.transcription.base import (
    TimedSpan,
    TranscriptionConfig,
    TranscriptionGateway,
    TranscriptionResult,
    Word,
    parse_transcription_config,
    resolve_api_key,
)
from meetflow.services.transcription.openai_whisper import OpenAIWhisperGateway

__all__ = [
    "TimedSpan",
    "TranscriptionConfig",
    "TranscriptionGateway",
    "TranscriptionResult",
    "Word",
    "parse_transcription_config",
    "resolve_api_key",
    "OpenAIWhisperGateway",
]
