from __future__ import annotations

from meetflow.services.diarization.providers.base import DiarizationProvider, DiarizationResult


class NullProvider(DiarizationProvider):
    def diarize(self, audio_path: str) -> DiarizationResult:
        return DiarizationResult(utterances=[])
