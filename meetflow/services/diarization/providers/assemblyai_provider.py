from __future__ import annotations

import logging
import os
import time
from typing import Optional

import requests

from meetflow.services.diarization.providers.base import (
    DiarizationProvider,
    DiarizationResult,
    Utterance,
)
from meetflow.services.resilience import GatewayRejected, ResilientInvoker, send
from meetflow.services.transcription.base import (
    TimedSpan,
    TranscriptionGateway,
    TranscriptionResult,
    Word,
)


def _ms(value) -> float:
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError):
        return 0.0


def _confidence(value, default: float = 1.0) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def _parse_words(items: list) -> list[Word]:
    words = []
    for item in items or []:
        text = str(item.get("text", "")).strip()
        if not text:
            continue
        words.append(
            Word(
                text=text,
                start=_ms(item.get("start")),
                end=_ms(item.get("end")),
                confidence=_confidence(item.get("confidence")),
            )
        )
    return words


class AssemblyAIProvider(TranscriptionGateway, DiarizationProvider):
    """AssemblyAI async transcription with speaker labels.

    Upload the file, submit a transcript job, then poll until it completes.
    AssemblyAI reports word and utterance times in milliseconds; everything
    leaving this class is in seconds.
    """

    def __init__(
        self,
        api_key: Optional[str],
        invoker: ResilientInvoker,
        base_url: str = "https://api.assemblyai.com",
        language: Optional[str] = "en",
        min_speakers: int = 1,
        max_speakers: int = 6,
        timeout: int = 120,
    ) -> None:
        self._api_key = api_key
        self._invoker = invoker
        self._base_url = base_url.rstrip("/")
        self._language = language
        self._min_speakers = min_speakers
        self._max_speakers = max_speakers
        self._timeout = timeout
        self._logger = logging.getLogger("meetflow.gateway.assemblyai")

    def _headers(self) -> dict:
        return {"authorization": self._api_key or ""}

    def _upload(self, audio_path: str) -> str:
        with open(audio_path, "rb") as f:
            data = f.read()
        response = send(
            requests.post,
            "AssemblyAI upload",
            f"{self._base_url}/v2/upload",
            headers={**self._headers(), "content-type": "application/octet-stream"},
            data=data,
            timeout=self._timeout,
        )
        upload_url = response.json().get("upload_url")
        if not upload_url:
            raise GatewayRejected("AssemblyAI upload returned no upload_url")
        return upload_url

    def _submit(self, upload_url: str, speaker_labels: bool) -> str:
        body: dict = {
            "audio_url": upload_url,
            "punctuate": True,
            "format_text": True,
        }
        if speaker_labels:
            body["speaker_labels"] = True
            body["speaker_options"] = {
                "min_speakers_expected": self._min_speakers,
                "max_speakers_expected": self._max_speakers,
            }
        if self._language:
            body["language_code"] = self._language
        else:
            body["language_detection"] = True

        response = send(
            requests.post,
            "AssemblyAI transcript",
            f"{self._base_url}/v2/transcript",
            headers=self._headers(),
            json=body,
            timeout=self._timeout,
        )
        job_id = response.json().get("id")
        if not job_id:
            raise GatewayRejected("AssemblyAI returned no transcript id")
        return job_id

    def _status(self, job_id: str) -> dict:
        response = send(
            requests.get,
            "AssemblyAI status",
            f"{self._base_url}/v2/transcript/{job_id}",
            headers=self._headers(),
            timeout=self._timeout,
        )
        return response.json()

    def _run_job(self, audio_path: str, speaker_labels: bool) -> dict:
        if not self._api_key:
            raise GatewayRejected("AssemblyAI API key not configured")
        started = time.perf_counter()
        upload_url = self._invoker.invoke(lambda: self._upload(audio_path), name="assemblyai.upload")
        job_id = self._invoker.invoke(
            lambda: self._submit(upload_url, speaker_labels), name="assemblyai.submit"
        )
        self._logger.info("Submitted transcript job %s for %s", job_id, os.path.basename(audio_path))
        job = self._invoker.poll(lambda: self._status(job_id), name="assemblyai")
        self._logger.info(
            "Transcript job %s completed in %.1fs", job_id, time.perf_counter() - started
        )
        return job

    def transcribe_with_speakers(self, audio_path: str) -> tuple[TranscriptionResult, DiarizationResult]:
        job = self._run_job(audio_path, speaker_labels=True)
        return self._to_transcription(job), self._to_diarization(job)

    def transcribe(self, audio_path: str) -> TranscriptionResult:
        return self._to_transcription(self._run_job(audio_path, speaker_labels=False))

    def diarize(self, audio_path: str) -> DiarizationResult:
        return self._to_diarization(self._run_job(audio_path, speaker_labels=True))

    def _to_transcription(self, job: dict) -> TranscriptionResult:
        words = _parse_words(job.get("words") or [])
        spans = [
            TimedSpan(
                start=_ms(u.get("start")),
                end=_ms(u.get("end")),
                text=str(u.get("text", "")).strip(),
                confidence=_confidence(u.get("confidence")),
            )
            for u in job.get("utterances") or []
            if str(u.get("text", "")).strip()
        ]
        # audio_duration is already reported in seconds
        duration = float(job.get("audio_duration") or 0.0)
        return TranscriptionResult(
            text=str(job.get("text") or "").strip(),
            language=job.get("language_code") or self._language,
            duration=duration,
            words=words,
            spans=spans,
        )

    def _to_diarization(self, job: dict) -> DiarizationResult:
        utterances = []
        for item in job.get("utterances") or []:
            text = str(item.get("text", "")).strip()
            if not text:
                continue
            speaker = item.get("speaker")
            utterances.append(
                Utterance(
                    speaker_label=str(speaker) if speaker is not None else None,
                    text=text,
                    start=_ms(item.get("start")),
                    end=_ms(item.get("end")),
                    confidence=_confidence(item.get("confidence")),
                    words=_parse_words(item.get("words") or []),
                )
            )
        return DiarizationResult(utterances=utterances, duration=float(job.get("audio_duration") or 0.0))
