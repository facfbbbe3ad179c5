from meetflow.services.realtime.assembler import TranscriptAssembler
from meetflow.services.realtime.chunk_buffer import ChunkBuffer, SealedAudio
from meetflow.services.realtime.config import RealtimeConfig, parse_realtime_config
from meetflow.services.realtime.models import (
    AssemblyUpdate,
    Chunk,
    SessionStatus,
    Speaker,
    TranscriptSegment,
)
from meetflow.services.realtime.pipeline import ChunkOutcome, ChunkPipeline, TranscriptContext
from meetflow.services.realtime.registry import (
    Session,
    SessionExpired,
    SessionNotFound,
    SessionRegistry,
)
from meetflow.services.realtime.sweeper import LifecycleSweeper
from meetflow.services.realtime.worker_pool import WorkerPool

__all__ = [
    "AssemblyUpdate",
    "Chunk",
    "ChunkBuffer",
    "ChunkOutcome",
    "ChunkPipeline",
    "LifecycleSweeper",
    "RealtimeConfig",
    "SealedAudio",
    "Session",
    "SessionExpired",
    "SessionNotFound",
    "SessionRegistry",
    "SessionStatus",
    "Speaker",
    "TranscriptAssembler",
    "TranscriptContext",
    "TranscriptSegment",
    "WorkerPool",
    "parse_realtime_config",
]
