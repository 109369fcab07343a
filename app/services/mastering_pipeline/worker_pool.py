"""
Worker Pool

Owns N execution units (OS processes running ``worker.unit_main``), a
FIFO job queue and the map of pending jobs. Every job handed to
``dispatch`` gets a ``concurrent.futures.Future`` that settles exactly
once: with a ChunkResult, or with one of the pool errors.

Architecture:
- Each unit talks to the coordinator over one duplex multiprocessing Pipe
- One listener thread multiplexes every unit connection and process
  sentinel (plus a wake pipe) with ``multiprocessing.connection.wait``
- Unit table, queue and pending map are only touched under one RLock;
  futures are settled after it is released
- Progress sinks run on a separate relay thread fed by a bounded queue,
  so a slow sink never delays completion handling
- Only the listener stops unit processes once the pool is running, so
  no connection is closed while it is being waited on

Crash handling:
- REPLACE (default): the lost unit's job fails with UnitCrashError and a
  freshly initialized unit takes the slot. A replacement that fails its
  own setup is retired; when no units remain, queued jobs fail with
  PoolExhaustedError
- TERMINATE: the lost unit's job fails with UnitCrashError and the whole
  pool stops, failing everything else with PoolTerminatedError

Example:
    >>> with WorkerPool(size=4) as pool:
    ...     future = pool.dispatch(job, progress_sink=print)
    ...     result = future.result()
"""

import functools
import logging
import multiprocessing
import queue
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.connection import wait
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from lib.config import DEFAULT_INIT_TIMEOUT, LOGS_DIR
from lib.system import calculate_pool_size

from .errors import (
    JobTimeoutError,
    ChunkProcessingError,
    PoolExhaustedError,
    PoolStateError,
    PoolTerminatedError,
    ProtocolError,
    SetupError,
    UnitCrashError,
)
from .jobs import ChunkResult, Job, ProgressEvent
from .messages import (
    InitRequest,
    ProcessRequest,
    ShutdownRequest,
    Ready,
    SetupFailed,
    Progress,
    Success,
    Failure,
    decode_response,
)
from .worker import ChunkMasteringHandler, unit_main

logger = logging.getLogger(__name__)

# Seconds a unit gets to exit after a shutdown request, then after SIGTERM
SHUTDOWN_GRACE = 1.0
TERMINATE_GRACE = 2.0
POLL_INTERVAL = 0.25

# Progress events waiting for delivery; newer events are dropped once full
PROGRESS_QUEUE_SIZE = 1000


class CrashPolicy(str, Enum):
    REPLACE = "replace"
    TERMINATE = "terminate"


class PoolState(str, Enum):
    NEW = "new"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class ExecutionUnit:
    """One pool slot's process. Replaced, never revived, when it is lost."""
    unit_id: int
    process: Any = field(repr=False)
    conn: Any = field(repr=False)
    ready: bool = False
    busy: bool = False
    current_job_index: Optional[int] = None
    spawned_at: float = field(default_factory=time.monotonic)
    job_started_at: Optional[float] = None


@dataclass
class PendingJobRecord:
    chunk_index: int
    future: Future = field(repr=False)
    progress_sink: Optional[Callable[[ProgressEvent], None]] = field(default=None, repr=False)
    unit_id: Optional[int] = None


def _deliver_progress(sink: Callable[[ProgressEvent], None], event: ProgressEvent) -> None:
    try:
        sink(event)
    except Exception as e:
        logger.warning(f"Progress callback error: {e}")


def _settle(future: Future, result: Any = None, error: Optional[BaseException] = None) -> None:
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class ProgressRelay:
    """
    Delivers progress events to sinks on its own thread.

    The listener only enqueues, so a slow sink never holds up job
    completion. Delivery is best-effort: when the queue is full the new
    event is dropped.
    """

    _STOP = object()

    def __init__(self, maxsize: int = PROGRESS_QUEUE_SIZE):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name="podmaster-progress-relay", daemon=True
        )
        self._thread.start()

    def submit(self, sink: Callable[[ProgressEvent], None], event: ProgressEvent) -> None:
        try:
            self._queue.put_nowait((sink, event))
        except queue.Full:
            self.dropped += 1
            logger.debug(f"Progress queue full, dropped event for chunk {event.chunk_index}")

    def stop(self, timeout: float = TERMINATE_GRACE) -> None:
        """Deliver what is already queued, then stop the thread."""
        if self._thread is None:
            return
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Progress queue still full at shutdown")
        if self._thread is threading.current_thread():
            self._thread = None
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Progress relay did not finish within the grace period")
        self._thread = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            sink, event = item
            _deliver_progress(sink, event)


class WorkerPool:
    """
    Bounded pool of isolated execution units with FIFO dispatch.

    Args:
        size: Number of units (0/None = derive from system resources)
        handler_factory: Importable callable building each unit's handler
        handler_args: Positional args for ``handler_factory``
        crash_policy: What a lost unit does to the rest of the pool
        job_timeout: Seconds a job may run before its unit is killed (None = no limit)
        init_timeout: Seconds to wait for units to report ready (None = no limit)
        log_dir: Directory for per-unit log files
        mp_context: multiprocessing start method ('spawn' by default)
    """

    def __init__(
        self,
        size: Optional[int] = None,
        handler_factory: Callable[..., Any] = ChunkMasteringHandler,
        handler_args: Sequence[Any] = (),
        crash_policy: CrashPolicy = CrashPolicy.REPLACE,
        job_timeout: Optional[float] = None,
        init_timeout: Optional[float] = DEFAULT_INIT_TIMEOUT,
        log_dir: Optional[str] = None,
        mp_context: str = "spawn",
    ):
        self.size = calculate_pool_size(size or 0)
        self.handler_factory = handler_factory
        self.handler_args = tuple(handler_args)
        self.crash_policy = CrashPolicy(crash_policy)
        self.job_timeout = job_timeout if job_timeout and job_timeout > 0 else None
        self.init_timeout = init_timeout if init_timeout and init_timeout > 0 else None
        self.log_dir = str(log_dir or LOGS_DIR)

        self._ctx = multiprocessing.get_context(mp_context)
        self._lock = threading.RLock()
        self._state = PoolState.NEW
        self._exhausted = False

        self._units: Dict[int, ExecutionUnit] = {}
        self._queue: Deque[Job] = deque()
        self._pending: Dict[int, PendingJobRecord] = {}
        self._doomed: List[ExecutionUnit] = []
        self._next_unit_id = 0

        self._listener: Optional[threading.Thread] = None
        self._wake_r, self._wake_w = self._ctx.Pipe(duplex=False)
        self._wake_pending = False
        self._progress = ProgressRelay()

    # ==================== Introspection ====================

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for u in self._units.values() if u.busy)

    def unit_status(self) -> List[Dict[str, Any]]:
        """Snapshot of the unit table for status displays."""
        with self._lock:
            return [
                {
                    "unit_id": u.unit_id,
                    "ready": u.ready,
                    "busy": u.busy,
                    "current_job_index": u.current_job_index,
                }
                for u in sorted(self._units.values(), key=lambda u: u.unit_id)
            ]

    # ==================== Lifecycle ====================

    def _spawn_unit(self) -> ExecutionUnit:
        unit_id = self._next_unit_id
        self._next_unit_id += 1

        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=unit_main,
            args=(unit_id, child_conn, self.handler_factory, self.handler_args, self.log_dir),
            name=f"podmaster-unit-{unit_id}",
            daemon=True,
        )
        process.start()
        child_conn.close()

        unit = ExecutionUnit(unit_id=unit_id, process=process, conn=parent_conn)
        parent_conn.send(InitRequest().to_message())
        logger.debug(f"Spawned unit {unit_id} (pid {process.pid})")
        return unit

    def initialize(self, on_progress: Optional[Callable[[int, int], None]] = None) -> None:
        """
        Spawn all units and wait until every one reports ready.

        Args:
            on_progress: Called with (ready, total) as units come up

        Raises:
            SetupError: if any unit fails setup, dies before ready, or the
                        init timeout expires. The pool is torn down first.
        """
        with self._lock:
            if self._state != PoolState.NEW:
                raise PoolStateError(f"Pool cannot be initialized from state {self._state.value}")

        logger.info("=" * 70)
        logger.info(f"🚀 Starting worker pool: {self.size} units ({self.crash_policy.value} on crash)")
        logger.info("=" * 70)
        start_time = time.time()

        units: List[ExecutionUnit] = []
        try:
            for _ in range(self.size):
                units.append(self._spawn_unit())
            self._await_ready(units, on_progress)
        except (SetupError, OSError) as e:
            self._state = PoolState.TERMINATED
            self._stop_units(units)
            self._close_wake_pipe()
            logger.error(f"❌ Worker pool failed to start: {e}")
            if isinstance(e, SetupError):
                raise
            raise SetupError(f"Could not start execution units: {e}") from e

        with self._lock:
            for unit in units:
                self._units[unit.unit_id] = unit
            self._state = PoolState.RUNNING

        self._progress.start()
        self._listener = threading.Thread(
            target=self._listen, name="podmaster-pool-listener", daemon=True
        )
        self._listener.start()
        logger.info(f"✓ All {self.size} units ready in {time.time() - start_time:.1f}s")

    def _await_ready(self, units: List[ExecutionUnit],
                     on_progress: Optional[Callable[[int, int], None]]) -> None:
        deadline = time.monotonic() + self.init_timeout if self.init_timeout else None
        waiting = {u.unit_id: u for u in units}
        total = len(units)

        while waiting:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SetupError(
                        f"Timed out after {self.init_timeout:.0f}s waiting for "
                        f"{len(waiting)} unit(s) to become ready"
                    )

            objects = [u.conn for u in waiting.values()] + [u.process.sentinel for u in waiting.values()]
            ready = wait(objects, timeout=remaining)

            for unit in list(waiting.values()):
                if unit.conn in ready:
                    try:
                        message = decode_response(unit.conn.recv())
                    except (EOFError, OSError):
                        raise SetupError(
                            f"Unit {unit.unit_id} exited before becoming ready", unit.unit_id
                        )
                    except ProtocolError as e:
                        raise SetupError(f"Unit {unit.unit_id}: {e}", unit.unit_id)

                    if isinstance(message, SetupFailed):
                        raise SetupError(
                            f"Unit {unit.unit_id} setup failed: {message.detail}", unit.unit_id
                        )
                    if not isinstance(message, Ready):
                        raise SetupError(
                            f"Unit {unit.unit_id} sent {type(message).__name__} before ready",
                            unit.unit_id,
                        )

                    unit.ready = True
                    del waiting[unit.unit_id]
                    logger.info(f"✓ Unit {unit.unit_id} ready ({total - len(waiting)}/{total})")
                    if on_progress:
                        try:
                            on_progress(total - len(waiting), total)
                        except Exception as e:
                            logger.warning(f"Progress callback error: {e}")

                elif unit.process.sentinel in ready:
                    raise SetupError(
                        f"Unit {unit.unit_id} exited with code {unit.process.exitcode} "
                        f"before becoming ready",
                        unit.unit_id,
                    )

    def terminate(self) -> None:
        """
        Stop every unit and fail every pending job with PoolTerminatedError.

        Safe to call more than once and from any thread.
        """
        actions: List[Callable[[], None]] = []
        with self._lock:
            was_running = self._state == PoolState.RUNNING
            self._begin_shutdown_locked(actions, "Pool terminated")
        self._run_actions(actions)

        listener = self._listener
        if listener is not None and listener is not threading.current_thread():
            listener.join()

        with self._lock:
            doomed, self._doomed = self._doomed, []
        self._stop_units(doomed)

        self._progress.stop()
        self._close_wake_pipe()

        if was_running:
            logger.info("🛑 Worker pool terminated")

    def _close_wake_pipe(self) -> None:
        with self._lock:
            self._wake_pending = True
            self._wake_r.close()
            self._wake_w.close()

    def _begin_shutdown_locked(self, actions: List[Callable[[], None]], reason: str) -> None:
        self._state = PoolState.TERMINATED
        self._queue.clear()

        for record in self._pending.values():
            actions.append(functools.partial(
                _settle, record.future,
                error=PoolTerminatedError(f"{reason} before chunk {record.chunk_index} settled"),
            ))
        self._pending.clear()

        self._doomed.extend(self._units.values())
        self._units.clear()
        self._wake_locked()

    def _stop_units(self, units: List[ExecutionUnit]) -> None:
        """Shutdown request, then SIGTERM, then SIGKILL."""
        for unit in units:
            try:
                unit.conn.send(ShutdownRequest().to_message())
            except (OSError, ValueError):
                logger.debug(f"Unit {unit.unit_id} connection already closed")

        for unit in units:
            process = unit.process
            process.join(timeout=SHUTDOWN_GRACE)
            if process.is_alive():
                logger.warning(f"Unit {unit.unit_id} did not exit, sending SIGTERM")
                process.terminate()
                process.join(timeout=TERMINATE_GRACE)
            if process.is_alive():
                logger.warning(f"Unit {unit.unit_id} still alive, sending SIGKILL")
                process.kill()
                process.join()
            unit.conn.close()

    def __enter__(self):
        if self._state == PoolState.NEW:
            self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.terminate()
        return False

    # ==================== Dispatch ====================

    def dispatch(self, job: Job,
                 progress_sink: Optional[Callable[[ProgressEvent], None]] = None) -> "Future[ChunkResult]":
        """
        Hand a job to the pool.

        The job goes straight to an idle unit, or to the back of the queue.

        Raises:
            PoolStateError: before initialize(), after terminate(), or once
                            every unit has been retired
            ValueError: if a job with the same chunk_index is still pending
        """
        if not isinstance(job, Job):
            raise TypeError(f"Expected a Job, got {type(job).__name__}")

        future: Future = Future()
        future.set_running_or_notify_cancel()
        actions: List[Callable[[], None]] = []

        with self._lock:
            if self._state == PoolState.NEW:
                raise PoolStateError("Pool is not initialized")
            if self._state == PoolState.TERMINATED:
                raise PoolTerminatedError("Pool is terminated")
            if self._exhausted:
                raise PoolExhaustedError("Every execution unit has been retired")
            if job.chunk_index in self._pending:
                raise ValueError(f"Chunk {job.chunk_index} is already pending")

            self._pending[job.chunk_index] = PendingJobRecord(
                chunk_index=job.chunk_index, future=future, progress_sink=progress_sink
            )

            unit = self._idle_unit_locked()
            if unit is not None:
                self._assign_locked(unit, job, actions)
            else:
                self._queue.append(job)
                logger.debug(f"Chunk {job.chunk_index} queued ({len(self._queue)} waiting)")

        self._run_actions(actions)
        return future

    def _idle_unit_locked(self) -> Optional[ExecutionUnit]:
        for unit_id in sorted(self._units):
            unit = self._units[unit_id]
            if unit.ready and not unit.busy:
                return unit
        return None

    def _assign_locked(self, unit: ExecutionUnit, job: Job, actions: List[Callable[[], None]]) -> None:
        record = self._pending[job.chunk_index]
        unit.busy = True
        unit.current_job_index = job.chunk_index
        unit.job_started_at = time.monotonic()
        record.unit_id = unit.unit_id

        try:
            unit.conn.send(ProcessRequest(job).to_message())
        except (OSError, ValueError) as e:
            self._lose_unit_locked(
                unit, UnitCrashError(unit.unit_id, job.chunk_index, f"Could not send job: {e}"), actions
            )
            return
        logger.debug(f"Chunk {job.chunk_index} -> unit {unit.unit_id}")

    def _assign_next_locked(self, unit: ExecutionUnit, actions: List[Callable[[], None]]) -> None:
        if self._queue and unit.ready and not unit.busy and self._units.get(unit.unit_id) is unit:
            self._assign_locked(unit, self._queue.popleft(), actions)

    # ==================== Unit loss ====================

    def _lose_unit_locked(self, unit: ExecutionUnit, job_error: Optional[UnitCrashError],
                          actions: List[Callable[[], None]]) -> None:
        if self._units.get(unit.unit_id) is not unit:
            return

        del self._units[unit.unit_id]
        self._doomed.append(unit)
        self._wake_locked()

        if unit.busy and unit.current_job_index is not None:
            record = self._pending.pop(unit.current_job_index, None)
            if record is not None:
                error = job_error or UnitCrashError(unit.unit_id, unit.current_job_index)
                logger.error(f"❌ {error}")
                actions.append(functools.partial(_settle, record.future, error=error))

        if self._state != PoolState.RUNNING:
            return

        if not unit.ready:
            logger.error(f"Replacement unit {unit.unit_id} failed its setup and is retired")
            self._check_exhausted_locked(actions)
            return

        if self.crash_policy == CrashPolicy.TERMINATE:
            logger.error(f"Unit {unit.unit_id} lost, terminating the pool")
            self._begin_shutdown_locked(actions, f"Unit {unit.unit_id} crashed")
            return

        try:
            replacement = self._spawn_unit()
        except (OSError, ValueError) as e:
            logger.error(f"Could not spawn a replacement for unit {unit.unit_id}: {e}")
            self._check_exhausted_locked(actions)
            return
        self._units[replacement.unit_id] = replacement
        logger.warning(f"⚠️  Unit {unit.unit_id} lost, replacement unit {replacement.unit_id} starting")

    def _check_exhausted_locked(self, actions: List[Callable[[], None]]) -> None:
        if self._units:
            return
        self._exhausted = True
        logger.error("❌ No execution units remain, failing queued jobs")
        while self._queue:
            job = self._queue.popleft()
            record = self._pending.pop(job.chunk_index, None)
            if record is not None:
                actions.append(functools.partial(
                    _settle, record.future,
                    error=PoolExhaustedError(f"No execution unit left for chunk {job.chunk_index}"),
                ))

    # ==================== Listener ====================

    def _wake_locked(self) -> None:
        if self._wake_pending:
            return
        self._wake_pending = True
        try:
            self._wake_w.send(None)
        except (OSError, ValueError):
            logger.debug("Wake pipe closed")

    def _run_actions(self, actions: List[Callable[[], None]]) -> None:
        for action in actions:
            action()

    def _handle_message_locked(self, unit: ExecutionUnit, message,
                               actions: List[Callable[[], None]]) -> None:
        if isinstance(message, Ready):
            if unit.ready:
                logger.warning(f"Unit {unit.unit_id} reported ready twice")
                return
            unit.ready = True
            logger.info(f"✓ Unit {unit.unit_id} ready")
            self._assign_next_locked(unit, actions)

        elif isinstance(message, SetupFailed):
            logger.error(f"Unit {unit.unit_id} setup failed: {message.detail}")
            self._lose_unit_locked(unit, None, actions)

        elif isinstance(message, Progress):
            record = self._pending.get(message.chunk_index)
            if record is not None and record.progress_sink is not None:
                event = ProgressEvent(unit.unit_id, message.chunk_index, message.message)
                self._progress.submit(record.progress_sink, event)

        elif isinstance(message, (Success, Failure)):
            if unit.current_job_index != message.chunk_index:
                raise ProtocolError(
                    f"Unit {unit.unit_id} reported chunk {message.chunk_index} "
                    f"while holding {unit.current_job_index}"
                )
            record = self._pending.pop(message.chunk_index, None)
            unit.busy = False
            unit.current_job_index = None
            unit.job_started_at = None

            if record is not None:
                if isinstance(message, Success):
                    result = ChunkResult(message.chunk_index, message.payload)
                    actions.append(functools.partial(_settle, record.future, result))
                else:
                    logger.error(f"❌ Chunk {message.chunk_index} failed on unit {unit.unit_id}")
                    actions.append(functools.partial(
                        _settle, record.future,
                        error=ChunkProcessingError(message.chunk_index, message.detail),
                    ))
            self._assign_next_locked(unit, actions)

    def _drain_locked(self, unit: ExecutionUnit, actions: List[Callable[[], None]]) -> None:
        """Handle everything the unit has sent so far."""
        while self._units.get(unit.unit_id) is unit:
            try:
                if not unit.conn.poll():
                    return
                raw = unit.conn.recv()
            except (EOFError, OSError):
                self._lose_unit_locked(unit, None, actions)
                return

            try:
                self._handle_message_locked(unit, decode_response(raw), actions)
            except ProtocolError as e:
                logger.error(f"Unit {unit.unit_id}: {e}")
                unit.process.kill()
                index = unit.current_job_index
                error = UnitCrashError(unit.unit_id, index, f"Protocol error: {e}") if unit.busy else None
                self._lose_unit_locked(unit, error, actions)
                return

    def _check_timeouts_locked(self, actions: List[Callable[[], None]]) -> None:
        now = time.monotonic()
        for unit in list(self._units.values()):
            if (self.job_timeout and unit.busy and unit.job_started_at is not None
                    and now - unit.job_started_at > self.job_timeout):
                logger.error(f"⏱️  Chunk {unit.current_job_index} timed out on unit {unit.unit_id}")
                unit.process.kill()
                self._lose_unit_locked(
                    unit, JobTimeoutError(unit.unit_id, unit.current_job_index, self.job_timeout), actions
                )
            elif (self.init_timeout and not unit.ready
                    and now - unit.spawned_at > self.init_timeout):
                logger.error(f"Replacement unit {unit.unit_id} did not become ready in time")
                unit.process.kill()
                self._lose_unit_locked(unit, None, actions)

    def _listen(self) -> None:
        try:
            self._listen_loop()
        except Exception as e:
            logger.exception(f"Worker pool listener failed: {e}")
            actions: List[Callable[[], None]] = []
            with self._lock:
                self._begin_shutdown_locked(actions, f"Listener failed ({e})")
            self._run_actions(actions)

        with self._lock:
            doomed, self._doomed = self._doomed, []
        self._stop_units(doomed)

    def _listen_loop(self) -> None:
        while True:
            with self._lock:
                if self._state != PoolState.RUNNING:
                    return
                doomed, self._doomed = self._doomed, []
                units = list(self._units.values())
                needs_polling = bool(self.job_timeout) or any(not u.ready for u in units)

            self._stop_units(doomed)

            objects = [self._wake_r]
            for unit in units:
                objects.append(unit.conn)
                objects.append(unit.process.sentinel)
            ready = wait(objects, timeout=POLL_INTERVAL if needs_polling else None)

            actions: List[Callable[[], None]] = []
            with self._lock:
                if self._wake_r in ready:
                    while self._wake_r.poll():
                        self._wake_r.recv()
                    self._wake_pending = False

                for unit in units:
                    if self._units.get(unit.unit_id) is not unit:
                        continue
                    conn_ready = unit.conn in ready
                    died = unit.process.sentinel in ready
                    if conn_ready or died:
                        self._drain_locked(unit, actions)
                    if died and self._units.get(unit.unit_id) is unit:
                        reason = f"Exit code {unit.process.exitcode}."
                        error = None
                        if unit.busy:
                            error = UnitCrashError(unit.unit_id, unit.current_job_index, reason)
                        logger.error(f"Unit {unit.unit_id} exited unexpectedly. {reason}")
                        self._lose_unit_locked(unit, error, actions)

                self._check_timeouts_locked(actions)

            self._run_actions(actions)
