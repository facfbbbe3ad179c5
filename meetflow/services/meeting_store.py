from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime
from typing import Iterable, Optional


class MeetingStore:
    """One JSON document per meeting under ``meetings_dir``.

    Writes are append/update only; live sessions keep their authoritative
    state in memory and use the store for durability and for readers.
    """

    def __init__(self, meetings_dir: str) -> None:
        self._meetings_dir = meetings_dir
        self._lock = threading.RLock()
        self._logger = logging.getLogger("meetflow.meeting_store")
        os.makedirs(self._meetings_dir, exist_ok=True)

    def _trace_log(self, stage: str, **fields) -> None:
        payload = " ".join(f"{k}={fields[k]!r}" for k in sorted(fields.keys()))
        self._logger.debug("TRACE stage=%s %s", stage, payload)

    def _meeting_path(self, meeting_id: str) -> str:
        return os.path.join(self._meetings_dir, f"{meeting_id}.json")

    def _read_meeting_file(self, path: str) -> Optional[dict]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            self._logger.warning("Failed to read meeting file: %s error=%s", path, exc)
        return None

    def _write_meeting_file(self, path: str, meeting: dict) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        temp_path = f"{path}.tmp"
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(meeting, f, indent=2)
        os.replace(temp_path, path)

    def _update(self, meeting_id: str, mutate) -> Optional[dict]:
        with self._lock:
            path = self._meeting_path(meeting_id)
            meeting = self._read_meeting_file(path)
            if meeting is None:
                self._logger.warning("Meeting not found for update: %s", meeting_id)
                return None
            mutate(meeting)
            meeting["updated_at"] = datetime.utcnow().isoformat()
            self._write_meeting_file(path, meeting)
            return meeting

    def create_meeting(
        self,
        title: Optional[str] = None,
        source: str = "realtime",
        user_id: Optional[str] = None,
        meeting_id: Optional[str] = None,
        audio_path: Optional[str] = None,
        processing_status: str = "pending",
    ) -> dict:
        now = datetime.utcnow().isoformat()
        meeting = {
            "id": meeting_id or uuid.uuid4().hex,
            "title": title or f"Meeting {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            "source": source,
            "user_id": user_id,
            "status": "in_progress",
            "processing_status": processing_status,
            "processing_progress": 0,
            "audio_path": audio_path,
            "created_at": now,
            "updated_at": now,
            "transcript": {"full_text": "", "word_count": 0, "language": None},
            "segments": [],
            "speakers": [],
            "action_items": [],
            "analysis": [],
        }
        with self._lock:
            self._write_meeting_file(self._meeting_path(meeting["id"]), meeting)
        self._trace_log("meeting_created", meeting_id=meeting["id"], source=source)
        return meeting

    def get_meeting(self, meeting_id: str) -> Optional[dict]:
        with self._lock:
            return self._read_meeting_file(self._meeting_path(meeting_id))

    def list_meetings(self) -> list[dict]:
        meetings = []
        with self._lock:
            try:
                names = sorted(os.listdir(self._meetings_dir))
            except OSError:
                return []
            for name in names:
                if not name.endswith(".json"):
                    continue
                meeting = self._read_meeting_file(os.path.join(self._meetings_dir, name))
                if meeting:
                    meetings.append(meeting)
        meetings.sort(key=lambda m: m.get("created_at", ""), reverse=True)
        return meetings

    def append_segments(self, meeting_id: str, segments: Iterable[dict]) -> Optional[dict]:
        rows = [dict(s) for s in segments]

        def mutate(meeting: dict) -> None:
            meeting.setdefault("segments", []).extend(rows)

        return self._update(meeting_id, mutate)

    def upsert_speakers(self, meeting_id: str, speakers: Iterable[dict]) -> Optional[dict]:
        rows = [dict(s) for s in speakers]

        def mutate(meeting: dict) -> None:
            existing = {s.get("label"): s for s in meeting.setdefault("speakers", [])}
            for row in rows:
                current = existing.get(row.get("label"))
                if current is None:
                    meeting["speakers"].append(row)
                    existing[row.get("label")] = row
                else:
                    current.update(row)

        return self._update(meeting_id, mutate)

    def update_transcript(
        self,
        meeting_id: str,
        full_text: str,
        word_count: int,
        language: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> Optional[dict]:
        def mutate(meeting: dict) -> None:
            transcript = meeting.setdefault("transcript", {})
            transcript["full_text"] = full_text
            transcript["word_count"] = word_count
            if language:
                transcript["language"] = language
            if duration is not None:
                meeting["duration"] = duration

        return self._update(meeting_id, mutate)

    def update_progress(self, meeting_id: str, processing_status: str, progress: int) -> Optional[dict]:
        def mutate(meeting: dict) -> None:
            meeting["processing_status"] = processing_status
            meeting["processing_progress"] = max(0, min(100, int(progress)))

        self._trace_log("progress", meeting_id=meeting_id, status=processing_status, progress=progress)
        return self._update(meeting_id, mutate)

    def add_action_items(
        self,
        meeting_id: str,
        items: Iterable[dict],
        source_chunk: Optional[int] = None,
        context_timestamp: Optional[float] = None,
    ) -> Optional[dict]:
        now = datetime.utcnow().isoformat()
        rows = []
        for item in items:
            row = dict(item)
            row.setdefault("id", uuid.uuid4().hex)
            if source_chunk is not None:
                row["source_chunk"] = source_chunk
            if context_timestamp is not None:
                row["context_timestamp"] = context_timestamp
            row["created_at"] = now
            rows.append(row)
        if not rows:
            return None

        def mutate(meeting: dict) -> None:
            meeting.setdefault("action_items", []).extend(rows)

        return self._update(meeting_id, mutate)

    def add_analysis(self, meeting_id: str, analysis_type: str, content: dict) -> Optional[dict]:
        row = {
            "id": uuid.uuid4().hex,
            "type": analysis_type,
            "content": content,
            "created_at": datetime.utcnow().isoformat(),
        }

        def mutate(meeting: dict) -> None:
            meeting.setdefault("analysis", []).append(row)

        return self._update(meeting_id, mutate)

    def update_status(self, meeting_id: str, status: str) -> Optional[dict]:
        def mutate(meeting: dict) -> None:
            meeting["status"] = status
            if status in ("completed", "failed", "expired"):
                meeting["ended_at"] = datetime.utcnow().isoformat()

        return self._update(meeting_id, mutate)
