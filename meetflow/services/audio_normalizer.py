from __future__ import annotations

import io
import logging
import os
import shutil
import struct
import subprocess
import tempfile
from dataclasses import dataclass
from math import gcd
from typing import Optional

import numpy as np
import soundfile as sf
from scipy.signal import resample_poly


class NormalizationFailed(RuntimeError):
    pass


@dataclass(frozen=True)
class NormalizedAudio:
    path: str
    sample_rate: int
    frames: int

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)


# Containers libsndfile can decode directly; anything else goes through ffmpeg.
_SOUNDFILE_CONTAINERS = {"wav", "flac", "ogg", "aiff", "mp3"}


def detect_container(data: bytes) -> Optional[str]:
    """Identify the audio container from its magic bytes, or None for raw PCM."""
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[:4] == b"fLaC":
        return "flac"
    if data[:4] == b"OggS":
        return "ogg"
    if data[:4] == b"\x1aE\xdf\xa3":
        return "webm"
    if len(data) >= 12 and data[:4] == b"FORM" and data[8:12] in (b"AIFF", b"AIFC"):
        return "aiff"
    if len(data) >= 8 and data[4:8] == b"ftyp":
        return "mp4"
    # A bare MPEG sync word is indistinguishable from small negative int16
    # samples, so only tagged MP3 is recognised.
    if data[:3] == b"ID3":
        return "mp3"
    return None


def build_wav_header(data_length: int, sample_rate: int, channels: int, bits_per_sample: int = 16) -> bytes:
    """Minimal 44-byte PCM WAV header for ``data_length`` bytes of samples."""
    block_align = channels * bits_per_sample // 8
    byte_rate = sample_rate * block_align
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
        b"data",
        data_length,
    )


class AudioNormalizer:
    """Converts chunk audio to mono, ``target_sample_rate``, 16-bit PCM WAV.

    Raw PCM (no container) is assumed to be little-endian int16 at
    ``input_sample_rate`` with ``input_channels`` interleaved channels.
    """

    def __init__(
        self,
        target_sample_rate: int = 16000,
        input_sample_rate: int = 16000,
        input_channels: int = 1,
        ffmpeg_path: Optional[str] = None,
    ) -> None:
        self._target_rate = target_sample_rate
        self._input_rate = input_sample_rate
        self._input_channels = max(1, input_channels)
        self._ffmpeg_path = ffmpeg_path
        self._logger = logging.getLogger("meetflow.normalizer")

    @property
    def target_sample_rate(self) -> int:
        return self._target_rate

    def normalize_bytes(self, data: bytes, dest_path: str) -> NormalizedAudio:
        if not data:
            raise NormalizationFailed("Empty audio chunk")

        container = detect_container(data)
        if container is None:
            frame_bytes = 2 * self._input_channels
            usable = len(data) - (len(data) % frame_bytes)
            if usable <= 0:
                raise NormalizationFailed(f"Raw PCM chunk too short: {len(data)} bytes")
            wav = build_wav_header(usable, self._input_rate, self._input_channels) + data[:usable]
            audio, rate = self._decode(io.BytesIO(wav))
            return self._write_canonical(audio, rate, dest_path)

        if container in _SOUNDFILE_CONTAINERS:
            try:
                audio, rate = self._decode(io.BytesIO(data))
                return self._write_canonical(audio, rate, dest_path)
            except NormalizationFailed as exc:
                self._logger.info("Direct %s decode failed, trying ffmpeg: %s", container, exc)

        with tempfile.NamedTemporaryFile(
            suffix=f".{container}", dir=os.path.dirname(dest_path) or None, delete=False
        ) as tmp:
            tmp.write(data)
            source_path = tmp.name
        try:
            return self._transcode(source_path, dest_path)
        finally:
            try:
                os.unlink(source_path)
            except OSError:
                pass

    def normalize_file(self, source_path: str, dest_path: str) -> NormalizedAudio:
        """Normalize an uploaded recording already on disk."""
        if not os.path.isfile(source_path) or os.path.getsize(source_path) == 0:
            raise NormalizationFailed(f"Audio file missing or empty: {source_path}")
        try:
            audio, rate = self._decode(source_path)
            return self._write_canonical(audio, rate, dest_path)
        except NormalizationFailed as exc:
            self._logger.info("Direct decode failed for %s, trying ffmpeg: %s", source_path, exc)
        return self._transcode(source_path, dest_path)

    def _decode(self, source) -> tuple[np.ndarray, int]:
        try:
            audio, rate = sf.read(source, dtype="float32", always_2d=True)
        except (sf.SoundFileError, RuntimeError) as exc:
            raise NormalizationFailed(f"Undecodable audio: {exc}") from exc
        return audio, rate

    def _write_canonical(self, audio: np.ndarray, rate: int, dest_path: str) -> NormalizedAudio:
        if audio.size == 0:
            raise NormalizationFailed("Audio contains no samples")

        mono = audio.mean(axis=1) if audio.ndim == 2 else audio
        if rate != self._target_rate:
            divisor = gcd(int(rate), int(self._target_rate))
            mono = resample_poly(mono, self._target_rate // divisor, int(rate) // divisor)
        mono = np.clip(mono, -1.0, 1.0).astype(np.float32)
        if mono.size == 0:
            raise NormalizationFailed("Audio contains no samples after resampling")

        os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
        sf.write(dest_path, mono, self._target_rate, subtype="PCM_16")
        return NormalizedAudio(path=dest_path, sample_rate=self._target_rate, frames=int(mono.shape[0]))

    def _transcode(self, source_path: str, dest_path: str) -> NormalizedAudio:
        ffmpeg = self._ffmpeg_path or shutil.which("ffmpeg")
        if not ffmpeg:
            raise NormalizationFailed("ffmpeg not available to transcode audio")

        cmd = [
            ffmpeg,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", source_path,
            "-ac", "1",
            "-ar", str(self._target_rate),
            "-c:a", "pcm_s16le",
            dest_path,
        ]
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=300)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise NormalizationFailed(f"ffmpeg failed to run: {exc}") from exc
        if proc.returncode != 0:
            raise NormalizationFailed(f"ffmpeg exited with {proc.returncode}: {proc.stderr.strip()[:300]}")

        try:
            info = sf.info(dest_path)
        except (sf.SoundFileError, RuntimeError) as exc:
            raise NormalizationFailed(f"ffmpeg output unreadable: {exc}") from exc
        if info.frames <= 0:
            raise NormalizationFailed("ffmpeg produced no audio")
        return NormalizedAudio(path=dest_path, sample_rate=info.samplerate, frames=int(info.frames))
