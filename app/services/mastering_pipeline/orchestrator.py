"""
Pipeline Orchestrator

Runs one input file through the whole system:

    1. Sanitize   extract the first audio stream to 16-bit PCM
    2. Analyze    read duration and mono/stereo layout
    3. Chunk      split into fixed-length segments
    4. Master     fan the chunks out to the worker pool and join
    5. Assemble   concatenate in chunk order and tag the result

Steps 1-3 and 5 run sequentially on the coordinator's own engine.
Step 4 is the only parallel part. Any chunk failure fails the run; chunks
already in flight are not cancelled, only waited for and discarded.
Cleanup runs on every exit path.

Example:
    >>> with WorkerPool(size=4) as pool:
    ...     orchestrator = MasteringOrchestrator(pool)
    ...     result = orchestrator.run("episode.wav")
    ...     if result.success:
    ...         Path("episode_mastered.mp3").write_bytes(result.final_payload)
"""

import logging
import re
import time
from concurrent.futures import FIRST_COMPLETED, wait
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from lib.audio import build_metadata_tags
from lib.config import DEFAULT_CHUNK_DURATION, OUTPUT_FORMAT

from .engine import FFmpegEngine, run_ffmpeg
from .errors import AssemblyError, MasteringError, PostconditionError
from .jobs import ChunkResult, Job, MasteringOptions, PipelineResult, PipelineUpdate, ProgressEvent
from .log_parsers import StreamInfo, parse_stream_info

logger = logging.getLogger(__name__)

TOTAL_STEPS = 5

SANITIZED_NAME = "sanitized_audio.wav"
CHUNK_PATTERN = "chunk_%04d.wav"
CHUNK_NAME_RE = re.compile(r"chunk_(\d+)\.wav")
CONCAT_LIST_NAME = "concat_list.txt"


class CleanupStack:
    """
    Scoped set of cleanup actions, run last-in first-out.

    A failing action is logged and the rest still run.
    """

    def __init__(self):
        self._actions: List[Tuple[str, Callable, tuple]] = []

    def push(self, description: str, action: Callable, *args) -> None:
        self._actions.append((description, action, args))

    def close(self) -> None:
        while self._actions:
            description, action, args = self._actions.pop()
            try:
                action(*args)
            except Exception as e:
                logger.warning(f"Cleanup failed ({description}): {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# Sequential steps (coordinator engine)
# ============================================================================

def sanitize(engine, input_name: str) -> str:
    """Extract the first audio stream as 16-bit PCM WAV."""
    run_ffmpeg(engine, [
        "-hide_banner",
        "-i", input_name,
        "-map", "0:a:0",
        "-c:a", "pcm_s16le",
        SANITIZED_NAME,
    ])
    if not engine.exists(SANITIZED_NAME):
        raise PostconditionError(f"Sanitize finished but {SANITIZED_NAME} was not created.")
    return SANITIZED_NAME


def analyze(engine, sanitized_name: str) -> StreamInfo:
    """Duration and channel layout of the sanitized audio."""
    run = run_ffmpeg(engine, ["-hide_banner", "-i", sanitized_name, "-f", "null", "-"])
    return parse_stream_info(run.diagnostics)


def chunk(engine, sanitized_name: str, chunk_duration: int = DEFAULT_CHUNK_DURATION) -> List[str]:
    """
    Split into ``chunk_duration``-second segments.

    Returns:
        Chunk file names in playback order
    """
    run_ffmpeg(engine, [
        "-hide_banner",
        "-i", sanitized_name,
        "-f", "segment",
        "-segment_time", str(chunk_duration),
        "-c:a", "pcm_s16le",
        CHUNK_PATTERN,
    ])
    # Numeric order: the segment muxer widens past chunk_9999
    numbered = []
    for name in engine.list_dir():
        match = CHUNK_NAME_RE.fullmatch(name)
        if match:
            numbered.append((int(match.group(1)), name))
    names = [name for _, name in sorted(numbered)]
    if not names:
        raise PostconditionError("Chunking Failed: No audio chunks were created.")
    return names


def concatenate(engine, results: List[ChunkResult], output_format: str,
                tags: List[Tuple[str, str]]) -> bytes:
    """
    Join mastered chunks in chunk_index order with stream copy.

    Returns:
        Bytes of the final tagged file
    """
    ordered = sorted(results, key=lambda r: r.chunk_index)

    list_lines = []
    for result in ordered:
        name = f"processed_{result.chunk_index:04d}.{output_format}"
        engine.write_file(name, result.payload)
        list_lines.append(f"file '{name}'")
    engine.write_file(CONCAT_LIST_NAME, "\n".join(list_lines) + "\n")

    final_name = f"final_mastered.{output_format}"
    metadata_args: List[str] = []
    for key, value in tags:
        metadata_args += ["-metadata", f"{key}={value}"]

    run_ffmpeg(engine, [
        "-hide_banner",
        "-f", "concat",
        "-safe", "0",
        "-i", CONCAT_LIST_NAME,
        "-c", "copy",
        *metadata_args,
        final_name,
    ])

    if not engine.exists(final_name):
        raise AssemblyError(f"Concatenation finished but {final_name} was not created.")
    return engine.read_file(final_name)


# ============================================================================
# Orchestrator
# ============================================================================

class MasteringOrchestrator:
    """
    Drives one input at a time through the pipeline on a shared pool.

    Args:
        pool: Initialized WorkerPool (or anything with ``dispatch``)
        chunk_duration: Segment length in seconds
        output_format: Container/codec extension of the output
        engine_factory: Builds the coordinator engine; called with ``on_command``
    """

    def __init__(
        self,
        pool,
        chunk_duration: int = DEFAULT_CHUNK_DURATION,
        output_format: str = OUTPUT_FORMAT,
        engine_factory: Callable[..., FFmpegEngine] = FFmpegEngine,
    ):
        if chunk_duration <= 0:
            raise ValueError(f"chunk_duration must be positive, got {chunk_duration}")
        self.pool = pool
        self.chunk_duration = chunk_duration
        self.output_format = output_format
        self.engine_factory = engine_factory

    @staticmethod
    def _notify(on_update: Optional[Callable[[PipelineUpdate], None]], update: PipelineUpdate) -> None:
        if on_update is None:
            return
        try:
            on_update(update)
        except Exception as e:
            logger.warning(f"Progress callback error: {e}")

    def run(
        self,
        input_path: Union[str, Path],
        options: Optional[MasteringOptions] = None,
        on_update: Optional[Callable[[PipelineUpdate], None]] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> PipelineResult:
        """Master a file on disk."""
        path = Path(input_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.error(f"❌ Cannot read input {path}: {e}")
            return PipelineResult.failed(e, 0.0)
        return self.run_bytes(data, path.name, options, on_update, on_progress)

    def run_bytes(
        self,
        data: bytes,
        input_name: str,
        options: Optional[MasteringOptions] = None,
        on_update: Optional[Callable[[PipelineUpdate], None]] = None,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> PipelineResult:
        """
        Master an in-memory file.

        Args:
            data: Raw bytes of the input container
            input_name: Original file name (extension and title tag)
            options: Optional dynamics stages (all enabled by default)
            on_update: Receives a PipelineUpdate per step and per finished chunk
            on_progress: Receives unit ProgressEvents

        Returns:
            PipelineResult with the final payload, or with the error
        """
        options = options or MasteringOptions()
        start_time = time.time()
        current_step = [0]

        def on_command(command_line: str) -> None:
            self._notify(on_update, PipelineUpdate(
                current_step[0], TOTAL_STEPS, "Running engine command", command=command_line
            ))

        logger.info("=" * 70)
        logger.info(f"🎙️  Mastering: {input_name}")
        logger.info(f"   Chunk duration: {self.chunk_duration}s | Output: {self.output_format}")
        logger.info("=" * 70)

        with CleanupStack() as cleanup:
            try:
                engine = self.engine_factory(on_command=on_command)
                cleanup.push("coordinator working area", engine.close)

                def begin(step: int, message: str) -> float:
                    current_step[0] = step
                    logger.info(f"[{step}/{TOTAL_STEPS}] {message}")
                    self._notify(on_update, PipelineUpdate(step, TOTAL_STEPS, message))
                    return time.time()

                def finish(step: int, message: str, started: float, **extra) -> None:
                    duration = time.time() - started
                    logger.info(f"✓ [{step}/{TOTAL_STEPS}] {message} ({duration:.1f}s)")
                    self._notify(on_update, PipelineUpdate(step, TOTAL_STEPS, message,
                                                           duration=duration, **extra))

                # Step 1
                started = begin(1, "Sanitizing input audio...")
                source_name = f"input{Path(input_name).suffix.lower()}"
                engine.write_file(source_name, data)
                sanitized_name = sanitize(engine, source_name)
                engine.delete_file(source_name)
                finish(1, "Sanitized input audio", started)

                # Step 2
                started = begin(2, "Analyzing audio stream...")
                info = analyze(engine, sanitized_name)
                finish(2, f"Analyzed: {info.duration:.2f}s, {info.channel_layout.value}", started)

                # Step 3
                started = begin(3, "Splitting into chunks...")
                chunk_names = chunk(engine, sanitized_name, self.chunk_duration)
                engine.delete_file(sanitized_name)
                finish(3, f"Created {len(chunk_names)} chunks", started,
                       chunks_done=0, chunks_total=len(chunk_names))

                # Step 4
                started = begin(4, f"Mastering {len(chunk_names)} chunks in parallel...")
                results = self._master_chunks(engine, chunk_names, info, options, on_update, on_progress)
                finish(4, f"Mastered {len(results)} chunks", started,
                       chunks_done=len(results), chunks_total=len(chunk_names))

                # Step 5
                started = begin(5, "Assembling final file...")
                tags = build_metadata_tags(input_name)
                final_payload = concatenate(engine, results, self.output_format, tags)
                finish(5, "Assembled final file", started)

            except MasteringError as e:
                elapsed = time.time() - start_time
                logger.error(f"❌ Mastering failed after {elapsed:.1f}s: {e}")
                return PipelineResult.failed(e, elapsed)
            except Exception as e:
                elapsed = time.time() - start_time
                logger.exception(f"❌ Unexpected error after {elapsed:.1f}s: {e}")
                return PipelineResult.failed(e, elapsed)

        elapsed = time.time() - start_time
        logger.info("=" * 70)
        logger.info(f"✅ COMPLETED in {elapsed:.1f}s ({elapsed / 60:.1f} min)")
        logger.info(f"   Audio duration: {info.duration:.1f}s | Output: {len(final_payload)} bytes")
        logger.info("=" * 70)

        return PipelineResult.succeeded(final_payload, info.duration, elapsed, self.output_format)

    def _master_chunks(self, engine, chunk_names: List[str], info: StreamInfo,
                       options: MasteringOptions,
                       on_update: Optional[Callable[[PipelineUpdate], None]],
                       on_progress: Optional[Callable[[ProgressEvent], None]]) -> List[ChunkResult]:
        total = len(chunk_names)
        futures = []
        try:
            for index, name in enumerate(chunk_names):
                job = Job(
                    chunk_index=index,
                    payload=engine.read_file(name),
                    channel_layout=info.channel_layout,
                    options=options,
                )
                engine.delete_file(name)
                futures.append(self.pool.dispatch(job, on_progress))

            # Chunk updates are emitted here, never from the pool's listener thread
            done_count = 0
            not_done = set(futures)
            while not_done:
                done, not_done = wait(not_done, return_when=FIRST_COMPLETED)
                failed = [f for f in futures if f in done and f.exception() is not None]
                if failed:
                    raise failed[0].exception()
                for future in sorted(done, key=lambda f: f.result().chunk_index):
                    done_count += 1
                    self._notify(on_update, PipelineUpdate(
                        4, TOTAL_STEPS, f"Chunk {future.result().chunk_index + 1} mastered",
                        chunks_done=done_count, chunks_total=total,
                    ))
            return [f.result() for f in futures]

        finally:
            outstanding = [f for f in futures if not f.done()]
            if outstanding:
                # Let siblings finish so their chunk indices leave the pool
                logger.info(f"Waiting for {len(outstanding)} in-flight chunks to settle")
                wait(outstanding)
