import json
import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from meetflow.context import AppContext
from meetflow.routers.realtime import create_realtime_router
from meetflow.routers.uploads import create_uploads_router
from meetflow.services.audio_normalizer import AudioNormalizer
from meetflow.services.batch_processor import BatchProcessor
from meetflow.services.chunk_storage import ChunkStorage
from meetflow.services.crash_logging import enable_crash_logging
from meetflow.services.event_bus import EventBus
from meetflow.services.insights import InsightExtractor
from meetflow.services.logging_setup import configure_logging
from meetflow.services.meeting_store import MeetingStore
from meetflow.services.realtime import (
    ChunkPipeline,
    LifecycleSweeper,
    SessionRegistry,
    WorkerPool,
    parse_realtime_config,
)
from meetflow.services.resilience import ResilientInvoker, parse_retry_config
from meetflow.services.speech_service import SpeechService, parse_speech_config


def _load_config(config_path: str, logger: logging.Logger) -> dict:
    if not os.path.exists(config_path):
        logger.info("Boot: config_path missing=%s", config_path)
        return {}
    logger.info("Boot: loading config_path=%s", config_path)
    with open(config_path, "r", encoding="utf-8") as config_file:
        config = json.load(config_file)
    logger.info("Boot: config keys=%s", sorted(config.keys()))
    return config


def create_app(cwd: Optional[str] = None) -> FastAPI:
    cwd = cwd or os.getcwd()
    logs_dir = os.path.join(cwd, "logs")
    configure_logging(logs_dir)
    logger = logging.getLogger("meetflow.boot")
    logger.info("Boot: starting create_app cwd=%s pid=%s", cwd, os.getpid())
    enable_crash_logging(logs_dir)

    default_data_dir = os.path.join(cwd, "data")
    os.makedirs(default_data_dir, exist_ok=True)
    config_path = os.path.join(default_data_dir, "config.json")
    config = _load_config(config_path, logger)

    # Resolve data directory: use custom path from config if valid, else default
    custom_data_dir = config.get("data_dir", "")
    if custom_data_dir and os.path.isdir(custom_data_dir) and os.access(custom_data_dir, os.W_OK):
        data_dir = custom_data_dir
        logger.info("Boot: using custom data_dir=%s", data_dir)
    else:
        data_dir = default_data_dir
        if custom_data_dir:
            logger.warning(
                "Boot: custom data_dir=%s is invalid or not writable, falling back to %s",
                custom_data_dir, data_dir,
            )

    ctx = AppContext(cwd=cwd, data_dir=data_dir, config_path=config_path)
    ctx.ensure_dirs()
    logger.info("Boot: AppContext ready data_dir=%s", ctx.data_dir)

    realtime_config = parse_realtime_config(config)
    retry_config = parse_retry_config(config)
    speech_config = parse_speech_config(config)
    logger.info(
        "Boot: window=%.1fs workers=%s speech_mode=%s transcription=%s diarization=%s",
        realtime_config.chunk_window_seconds,
        realtime_config.worker_count,
        speech_config.mode,
        speech_config.transcription.provider,
        speech_config.diarization.provider if speech_config.diarization.enabled else "none",
    )

    events = EventBus()
    meeting_store = MeetingStore(ctx.meetings_dir)
    invoker = ResilientInvoker(retry_config)
    normalizer = AudioNormalizer(
        target_sample_rate=realtime_config.target_sample_rate,
        input_sample_rate=realtime_config.input_sample_rate,
        input_channels=realtime_config.input_channels,
    )
    storage = ChunkStorage(
        ctx.chunks_dir,
        retention_seconds=realtime_config.chunk_retention_seconds,
        grace_seconds=realtime_config.temp_file_grace_seconds,
    )
    speech = SpeechService(
        speech_config, invoker, min_diarization_seconds=realtime_config.min_diarization_seconds
    )
    insights = InsightExtractor(ctx.config_path, invoker)
    pipeline = ChunkPipeline(
        normalizer,
        speech,
        insights,
        meeting_store,
        events,
        storage,
        min_extraction_chars=realtime_config.min_extraction_chars,
    )
    pool = WorkerPool(realtime_config.worker_count, realtime_config.queue_size)
    pool.start()
    registry = SessionRegistry(realtime_config, pipeline, pool, storage, meeting_store, events)
    sweeper = LifecycleSweeper(registry, storage, interval=realtime_config.sweep_interval_seconds)
    sweeper.start()
    batch = BatchProcessor(
        pipeline,
        normalizer,
        storage,
        meeting_store,
        events,
        chunk_window=realtime_config.chunk_window_seconds,
    )
    logger.info("Boot: services ready")

    app = FastAPI(title="Meetflow", version="0.1.0")
    app.state.ctx = ctx
    app.state.events = events
    app.state.meeting_store = meeting_store
    app.state.registry = registry
    app.state.batch = batch
    app.state.sweeper = sweeper

    app.include_router(create_realtime_router(registry, events))
    logger.info("Boot: realtime router mounted")
    app.include_router(create_uploads_router(ctx, meeting_store, batch))
    logger.info("Boot: uploads router mounted")

    class NoCacheMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            if request.url.path.startswith("/api/"):
                response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
                response.headers["Pragma"] = "no-cache"
            return response

    app.add_middleware(NoCacheMiddleware)

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "active_sessions": len(registry.list_sessions())}

    @app.on_event("shutdown")
    def shutdown() -> None:
        logger.info("Shutdown: stopping sweeper and workers")
        sweeper.stop()
        pool.stop()

    logger.info("Boot: create_app complete")
    return app
