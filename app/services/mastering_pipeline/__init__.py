"""
Mastering Pipeline - Parallel Chunked Podcast Mastering

Architecture:
- Coordinator sanitizes, analyzes and splits the input on its own engine
- A pool of isolated OS processes masters the chunks concurrently
- Each chunk runs a four-pass loudness/dynamics state machine
- Results are concatenated in chunk order and tagged

Pipeline Flow:
    [Sanitize] -> [Analyze] -> [Chunk] -+-> [Unit 0: 4 passes] -+-> [Assemble]
                                        +-> [Unit 1: 4 passes] -+
                                        +-> [Unit N: 4 passes] -+

Components:
- MasteringOrchestrator: Runs the five steps for one input
- WorkerPool: Units, FIFO queue, dispatch, crash recovery, progress relay
- ChunkPipeline: Per-chunk state machine (loudness -> normalize -> RMS -> encode)
- FFmpegEngine: ffmpeg bound to a private working directory
"""

from .chunk_pipeline import ChunkPipeline, ChunkState
from .engine import FFmpegEngine, EngineRun, LogStore, check_ffmpeg, run_ffmpeg
from .errors import (
    MasteringError,
    SetupError,
    EngineInvocationError,
    PostconditionError,
    LoudnessParseError,
    RmsParseError,
    StreamInfoError,
    AssemblyError,
    ChunkProcessingError,
    UnitCrashError,
    JobTimeoutError,
    PoolStateError,
    PoolTerminatedError,
    PoolExhaustedError,
    ProtocolError,
)
from .jobs import (
    ChannelLayout,
    MasteringOptions,
    Job,
    ChunkResult,
    ProgressEvent,
    PipelineUpdate,
    PipelineResult,
)
from .orchestrator import MasteringOrchestrator, CleanupStack
from .worker import ChunkMasteringHandler
from .worker_pool import WorkerPool, CrashPolicy

__all__ = [
    'MasteringOrchestrator',
    'CleanupStack',
    'WorkerPool',
    'CrashPolicy',
    'ChunkPipeline',
    'ChunkState',
    'ChunkMasteringHandler',
    'FFmpegEngine',
    'EngineRun',
    'LogStore',
    'check_ffmpeg',
    'run_ffmpeg',
    'ChannelLayout',
    'MasteringOptions',
    'Job',
    'ChunkResult',
    'ProgressEvent',
    'PipelineUpdate',
    'PipelineResult',
    'MasteringError',
    'SetupError',
    'EngineInvocationError',
    'PostconditionError',
    'LoudnessParseError',
    'RmsParseError',
    'StreamInfoError',
    'AssemblyError',
    'ChunkProcessingError',
    'UnitCrashError',
    'JobTimeoutError',
    'PoolStateError',
    'PoolTerminatedError',
    'PoolExhaustedError',
    'ProtocolError',
]
