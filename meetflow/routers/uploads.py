import logging
import os
import re
import uuid
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from meetflow.context import AppContext
from meetflow.services.batch_processor import BatchProcessor
from meetflow.services.meeting_store import MeetingStore


def _sanitize_filename(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", name or "")
    return cleaned or "audio.wav"


def create_uploads_router(ctx: AppContext, store: MeetingStore, batch: BatchProcessor) -> APIRouter:
    router = APIRouter()
    logger = logging.getLogger("meetflow.api.uploads")
    os.makedirs(ctx.uploads_dir, exist_ok=True)

    @router.post("/api/uploads/audio")
    async def upload_audio(
        file: UploadFile = File(...),
        title: Optional[str] = Form(None),
        user_id: Optional[str] = Form(None),
    ) -> dict:
        original_name = _sanitize_filename(file.filename or "audio")
        _, ext = os.path.splitext(original_name)
        safe_ext = ext.lower() if ext else ""
        target_name = f"{uuid.uuid4().hex}{safe_ext}"
        target_path = os.path.join(ctx.uploads_dir, target_name)

        try:
            contents = await file.read()
            with open(target_path, "wb") as output:
                output.write(contents)
        except Exception as exc:
            logger.exception("Upload failed: %s", exc)
            raise HTTPException(status_code=500, detail="Upload failed") from exc
        if not contents:
            os.remove(target_path)
            raise HTTPException(status_code=400, detail="Uploaded file is empty")

        meeting = store.create_meeting(
            title=title or os.path.splitext(original_name)[0],
            source="upload",
            user_id=user_id,
            audio_path=target_path,
            processing_status="queued",
        )
        batch.submit(meeting["id"], target_path)
        logger.info("Audio uploaded: %s meeting=%s bytes=%s", target_path, meeting["id"], len(contents))
        return {"meeting_id": meeting["id"], "audio_name": original_name, "processing_status": "queued"}

    @router.get("/api/uploads/{meeting_id}")
    def upload_status(meeting_id: str) -> dict:
        meeting = store.get_meeting(meeting_id)
        if not meeting:
            raise HTTPException(status_code=404, detail="Meeting not found")
        return {
            "meeting_id": meeting_id,
            "status": meeting.get("status"),
            "processing_status": meeting.get("processing_status"),
            "processing_progress": meeting.get("processing_progress", 0),
        }

    return router
