"""
Execution unit side of the worker pool.

Each unit is a separate OS process running ``unit_main``. It owns one
handler (normally ``ChunkMasteringHandler``, which owns one private
FFmpeg engine) and serves requests from its end of a duplex Pipe until
it is told to shut down or the pipe closes.

Handler protocol (anything picklable-by-reference with these methods):

    setup(logger)             -> None, raise to fail the init handshake
    process(job, report)      -> bytes, ``report(message)`` sends progress
    close()                   -> None
    log_tail()                -> str (optional), appended to failure details
"""

import logging
import signal
import time
import traceback
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from lib.config import LOGS_DIR, OUTPUT_FORMAT

from .chunk_pipeline import ChunkPipeline
from .engine import FFmpegEngine, check_ffmpeg
from .errors import ProtocolError
from .jobs import Job
from .messages import (
    InitRequest,
    ProcessRequest,
    ShutdownRequest,
    Ready,
    SetupFailed,
    Progress,
    Success,
    Failure,
    decode_request,
)


def _setup_unit_logger(unit_id: int, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup a file logger for one execution unit that can be tailed.

    Args:
        unit_id: Unit identifier
        log_dir: Directory for log files (defaults to LOGS_DIR)

    Returns:
        Configured logger instance
    """
    unit_logger = logging.getLogger(f"podmaster_unit_{unit_id}")
    unit_logger.setLevel(logging.INFO)
    unit_logger.propagate = False

    # Clear handlers left over from a previous unit with the same id
    for handler in unit_logger.handlers:
        handler.close()
    unit_logger.handlers = []

    class UnitFormatter(logging.Formatter):
        def __init__(self, uid):
            super().__init__('%(asctime)s - [Unit %(unit_id)s] - %(message)s', datefmt='%H:%M:%S')
            self.uid = uid

        def format(self, record):
            record.unit_id = self.uid
            return super().format(record)

    log_path = Path(log_dir) if log_dir else LOGS_DIR
    try:
        log_path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path / f"unit_{unit_id}.log", mode='w')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(UnitFormatter(unit_id))
        unit_logger.addHandler(file_handler)
    except OSError as e:
        logging.getLogger(__name__).warning(f"Unit {unit_id}: file logging disabled: {e}")

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.WARNING)
    stream_handler.setFormatter(UnitFormatter(unit_id))
    unit_logger.addHandler(stream_handler)

    return unit_logger


class ChunkMasteringHandler:
    """Runs the four-pass ChunkPipeline on a private FFmpeg engine."""

    def __init__(self, output_format: str = OUTPUT_FORMAT):
        self.output_format = output_format
        self.engine: Optional[FFmpegEngine] = None
        self.logger: Optional[logging.Logger] = None

    def setup(self, logger: logging.Logger) -> None:
        self.logger = logger
        check_ffmpeg()
        self.engine = FFmpegEngine()
        logger.info(f"Engine ready in {self.engine.working_dir}")

    def process(self, job: Job, report: Callable[[str], None]) -> bytes:
        input_name = f"chunk_{job.chunk_index:04d}.wav"
        self.engine.log_store.clear()
        self.engine.write_file(input_name, job.payload)

        output_name = None
        try:
            pipeline = ChunkPipeline(
                self.engine,
                input_name,
                job.channel_layout,
                options=job.options,
                report=report,
                logger=self.logger,
                output_format=self.output_format,
            )
            output_name = pipeline.run()
            return self.engine.read_file(output_name)
        finally:
            for name in (input_name, output_name):
                if name and self.engine.exists(name):
                    self.engine.delete_file(name)

    def log_tail(self) -> str:
        return self.engine.log_store.tail() if self.engine else ""

    def close(self) -> None:
        if self.engine:
            self.engine.close()
            self.engine = None


def _failure_detail(error: BaseException, handler: Any) -> str:
    detail = f"{error}\n\n{traceback.format_exc()}"
    tail_fn = getattr(handler, "log_tail", None)
    if tail_fn:
        try:
            tail = tail_fn()
        except Exception as e:
            tail = f"(log tail unavailable: {e})"
        if tail:
            detail += f"\n--- Full Worker Log ---\n{tail}"
    return detail


def unit_main(
    unit_id: int,
    conn,
    handler_factory: Callable[..., Any],
    handler_args: Sequence[Any] = (),
    log_dir: Optional[str] = None,
) -> None:
    """
    Entry point of an execution unit process.

    Args:
        unit_id: Unit identifier (for logging and progress events)
        conn: Unit end of the duplex Pipe
        handler_factory: Importable callable building the handler
        handler_args: Positional args for ``handler_factory``
        log_dir: Directory for the unit's log file
    """
    # The coordinator owns interruption; units are stopped via shutdown or terminate
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    unit_logger = _setup_unit_logger(unit_id, log_dir)
    unit_logger.info("=" * 60)
    unit_logger.info(f"STARTING - unit {unit_id}")
    unit_logger.info("=" * 60)

    handler = None
    processed = 0
    start_time = time.time()

    try:
        while True:
            try:
                raw = conn.recv()
            except (EOFError, OSError):
                unit_logger.info("Coordinator connection closed")
                break

            try:
                request = decode_request(raw)
            except ProtocolError as e:
                unit_logger.error(f"Dropping malformed request: {e}")
                continue

            if isinstance(request, ShutdownRequest):
                unit_logger.info("Shutdown requested")
                break

            if isinstance(request, InitRequest):
                try:
                    handler = handler_factory(*handler_args)
                    handler.setup(unit_logger)
                except Exception as e:
                    unit_logger.error(f"Setup failed: {e}")
                    conn.send(SetupFailed(detail=f"{e}\n\n{traceback.format_exc()}").to_message())
                    handler = None
                    break
                conn.send(Ready().to_message())
                unit_logger.info("✓ Ready")
                continue

            if isinstance(request, ProcessRequest):
                job = request.job
                if handler is None:
                    conn.send(Failure(job.chunk_index, "Unit is not initialized").to_message())
                    continue

                def report(message: str, _index: int = job.chunk_index) -> None:
                    unit_logger.info(f"[chunk {_index}] {message}")
                    conn.send(Progress(_index, message).to_message())

                chunk_start = time.time()
                unit_logger.info(f"Processing chunk {job.chunk_index} ({len(job.payload)} bytes)")
                try:
                    payload = handler.process(job, report)
                except Exception as e:
                    unit_logger.error(f"✗ Chunk {job.chunk_index} FAILED: {e}")
                    conn.send(Failure(job.chunk_index, _failure_detail(e, handler)).to_message())
                    continue

                processed += 1
                unit_logger.info(
                    f"✓ Chunk {job.chunk_index} done - {len(payload)} bytes - "
                    f"{time.time() - chunk_start:.1f}s"
                )
                conn.send(Success(job.chunk_index, payload).to_message())

    finally:
        if handler is not None:
            try:
                handler.close()
            except Exception as e:
                unit_logger.warning(f"Handler close failed: {e}")
        conn.close()
        total_time = time.time() - start_time
        unit_logger.info("=" * 60)
        unit_logger.info(f"STOPPED after {total_time:.1f}s - {processed} chunks")
        unit_logger.info("=" * 60)
