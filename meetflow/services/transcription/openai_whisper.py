from __future__ import annotations

import logging
import math
import os

import requests

from meetflow.services.resilience import GatewayRejected, ResilientInvoker, send
from meetflow.services.transcription.base import (
    TimedSpan,
    TranscriptionConfig,
    TranscriptionGateway,
    TranscriptionResult,
    Word,
)


def _segment_confidence(segment: dict) -> float:
    avg_logprob = segment.get("avg_logprob")
    if avg_logprob is None:
        return 1.0
    try:
        return max(0.0, min(1.0, math.exp(float(avg_logprob))))
    except (TypeError, ValueError, OverflowError):
        return 1.0


class OpenAIWhisperGateway(TranscriptionGateway):
    """Speech-to-text over the OpenAI ``/v1/audio/transcriptions`` endpoint."""

    def __init__(self, config: TranscriptionConfig, invoker: ResilientInvoker, timeout: int = 300) -> None:
        self._config = config
        self._invoker = invoker
        self._timeout = timeout
        self._logger = logging.getLogger("meetflow.gateway.openai")

    def _post(self, audio_path: str) -> dict:
        data = [
            ("model", self._config.model),
            ("response_format", "verbose_json"),
            ("timestamp_granularities[]", "word"),
            ("timestamp_granularities[]", "segment"),
        ]
        if self._config.language:
            data.append(("language", self._config.language))
        if self._config.prompt:
            data.append(("prompt", self._config.prompt))

        with open(audio_path, "rb") as f:
            response = send(
                requests.post,
                "OpenAI transcription",
                f"{self._config.base_url}/v1/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                files={"file": (os.path.basename(audio_path), f, "audio/wav")},
                data=data,
                timeout=self._timeout,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayRejected("OpenAI transcription returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise GatewayRejected("OpenAI transcription returned unexpected payload")
        return payload

    def transcribe(self, audio_path: str) -> TranscriptionResult:
        if not self._config.api_key:
            raise GatewayRejected("OpenAI API key not configured")

        payload = self._invoker.invoke(lambda: self._post(audio_path), name="openai.transcribe")

        spans = []
        for segment in payload.get("segments") or []:
            text = str(segment.get("text", "")).strip()
            if not text:
                continue
            spans.append(
                TimedSpan(
                    start=float(segment.get("start", 0.0)),
                    end=float(segment.get("end", 0.0)),
                    text=text,
                    confidence=_segment_confidence(segment),
                )
            )

        words = []
        for item in payload.get("words") or []:
            text = str(item.get("word", "")).strip()
            if not text:
                continue
            start = float(item.get("start", 0.0))
            confidence = 1.0
            for span in spans:
                if span.start <= start < span.end:
                    confidence = span.confidence
                    break
            words.append(Word(text=text, start=start, end=float(item.get("end", start)), confidence=confidence))

        result = TranscriptionResult(
            text=str(payload.get("text", "")).strip(),
            language=payload.get("language") or self._config.language,
            duration=float(payload.get("duration") or 0.0),
            words=words,
            spans=spans,
        )
        self._logger.info(
            "Transcribed %s: chars=%s words=%s segments=%s",
            os.path.basename(audio_path),
            len(result.text),
            len(words),
            len(spans),
        )
        return result
