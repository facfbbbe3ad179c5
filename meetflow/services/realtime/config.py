from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RealtimeConfig:
    """Tuning for live sessions, chunking, sweeping and the worker pool."""

    chunk_window_seconds: float = 90.0
    input_sample_rate: int = 16000
    input_channels: int = 1
    target_sample_rate: int = 16000
    max_session_seconds: float = 4 * 60 * 60
    idle_timeout_seconds: float = 30 * 60
    disconnect_timeout_seconds: float = 15 * 60
    completed_retention_seconds: float = 60 * 60
    sweep_interval_seconds: float = 5 * 60
    chunk_retention_seconds: float = 60.0
    temp_file_grace_seconds: float = 2 * 60 * 60
    min_extraction_chars: int = 50
    min_diarization_seconds: float = 10.0
    worker_count: int = 4
    queue_size: int = 256


def parse_realtime_config(data: dict) -> RealtimeConfig:
    """Parse the ``realtime`` section of config.json, defaulting key by key."""
    raw = data.get("realtime", {}) if isinstance(data, dict) else {}
    if not isinstance(raw, dict):
        raw = {}
    defaults = RealtimeConfig()

    def _float(key: str) -> float:
        return float(raw.get(key, getattr(defaults, key)))

    def _int(key: str) -> int:
        return int(raw.get(key, getattr(defaults, key)))

    window = _float("chunk_window_seconds")
    if window <= 0:
        raise ValueError("realtime.chunk_window_seconds must be positive")

    return RealtimeConfig(
        chunk_window_seconds=window,
        input_sample_rate=_int("input_sample_rate"),
        input_channels=max(1, _int("input_channels")),
        target_sample_rate=_int("target_sample_rate"),
        max_session_seconds=_float("max_session_seconds"),
        idle_timeout_seconds=_float("idle_timeout_seconds"),
        disconnect_timeout_seconds=_float("disconnect_timeout_seconds"),
        completed_retention_seconds=_float("completed_retention_seconds"),
        sweep_interval_seconds=max(1.0, _float("sweep_interval_seconds")),
        chunk_retention_seconds=_float("chunk_retention_seconds"),
        temp_file_grace_seconds=_float("temp_file_grace_seconds"),
        min_extraction_chars=_int("min_extraction_chars"),
        min_diarization_seconds=_float("min_diarization_seconds"),
        worker_count=max(1, _int("worker_count")),
        queue_size=max(1, _int("queue_size")),
    )
