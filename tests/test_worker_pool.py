"""
Worker pool tests against real spawned units running tests.pool_handlers.
"""

import threading
import time

import pytest

from app.services.mastering_pipeline.errors import (
    ChunkProcessingError,
    JobTimeoutError,
    PoolExhaustedError,
    PoolStateError,
    PoolTerminatedError,
    SetupError,
    UnitCrashError,
)
from app.services.mastering_pipeline.jobs import ChannelLayout, ChunkResult, Job, ProgressEvent
from app.services.mastering_pipeline.worker_pool import CrashPolicy, PoolState, ProgressRelay, WorkerPool
from tests.pool_handlers import ScriptedHandler, scripted

RESULT_TIMEOUT = 30


def job(index, payload=b"pcm"):
    return Job(index, payload, ChannelLayout.STEREO)


def make_pool(unit_log_dir, size=2, handler_args=(), **kwargs):
    kwargs.setdefault("init_timeout", RESULT_TIMEOUT)
    return WorkerPool(
        size=size,
        handler_factory=ScriptedHandler,
        handler_args=handler_args,
        log_dir=unit_log_dir,
        **kwargs,
    )


class EventLog:
    """Thread-safe progress sink."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, event):
        with self._lock:
            self.events.append(event)

    def first(self, chunk_index, message):
        for position, event in enumerate(self.events):
            if event.chunk_index == chunk_index and event.message == message:
                return position, event
        raise AssertionError(f"no {message!r} event for chunk {chunk_index}")


def test_initialize_waits_for_every_unit(unit_log_dir):
    progress = []
    pool = make_pool(unit_log_dir, size=3)
    try:
        pool.initialize(on_progress=lambda ready, total: progress.append((ready, total)))
        assert pool.state is PoolState.RUNNING
        assert progress == [(1, 3), (2, 3), (3, 3)]
        assert [u["ready"] for u in pool.unit_status()] == [True, True, True]
    finally:
        pool.terminate()


def test_setup_error_fails_initialize(tmp_path, unit_log_dir):
    marker = tmp_path / "no_engine"
    marker.touch()
    pool = make_pool(unit_log_dir, handler_args=({}, str(marker)))

    with pytest.raises(SetupError):
        pool.initialize()

    assert pool.state is PoolState.TERMINATED
    with pytest.raises(PoolStateError):
        pool.dispatch(job(0))
    assert pool._wake_r.closed and pool._wake_w.closed


def test_one_failing_unit_fails_initialize(tmp_path, unit_log_dir):
    pool = make_pool(unit_log_dir, size=3,
                     handler_args=({}, None, None, str(tmp_path / "one_fails")))
    with pytest.raises(SetupError) as exc_info:
        pool.initialize()
    assert "setup failed" in str(exc_info.value)


def test_dispatch_before_initialize(unit_log_dir):
    pool = make_pool(unit_log_dir)
    with pytest.raises(PoolStateError):
        pool.dispatch(job(0))


def test_results_come_back(unit_log_dir):
    events = EventLog()
    with make_pool(unit_log_dir) as pool:
        futures = [pool.dispatch(job(i, f"c{i}".encode()), events) for i in range(4)]
        results = [f.result(timeout=RESULT_TIMEOUT) for f in futures]

    assert results == [ChunkResult(i, f"done:c{i}".encode()) for i in range(4)]
    assert {e.chunk_index for e in events.events} == {0, 1, 2, 3}


def test_fifo_queue_feeds_first_free_unit(unit_log_dir):
    delays = {0: 0.6, 1: 0.2, 2: 0.9, 3: 0.1, 4: 0.1}
    events = EventLog()

    with make_pool(unit_log_dir, size=3, handler_args=(delays,)) as pool:
        futures = [pool.dispatch(job(i), events) for i in range(5)]
        assert pool.queued_count == 2

        for future in futures:
            future.result(timeout=RESULT_TIMEOUT)

    _, chunk1_start = events.first(1, "started")
    pos3, chunk3_start = events.first(3, "started")
    pos4, _ = events.first(4, "started")

    assert pos3 < pos4
    assert chunk3_start.unit_id == chunk1_start.unit_id


def test_duplicate_pending_chunk_is_rejected(unit_log_dir):
    with make_pool(unit_log_dir, size=1, handler_args=({0: 0.5},)) as pool:
        first = pool.dispatch(job(0))
        with pytest.raises(ValueError):
            pool.dispatch(job(0))
        assert first.result(timeout=RESULT_TIMEOUT).payload == b"done:pcm"
        # Settled indices can be reused
        assert pool.dispatch(job(0)).result(timeout=RESULT_TIMEOUT).chunk_index == 0


def test_reported_failure_is_not_retried(unit_log_dir):
    with make_pool(unit_log_dir) as pool:
        bad = pool.dispatch(job(0, b"error"))
        good = pool.dispatch(job(1))

        with pytest.raises(ChunkProcessingError) as exc_info:
            bad.result(timeout=RESULT_TIMEOUT)
        assert exc_info.value.chunk_index == 0
        assert "bad chunk 0" in exc_info.value.detail
        assert good.result(timeout=RESULT_TIMEOUT).payload == b"done:pcm"


def test_crash_with_replace_only_fails_that_job(unit_log_dir):
    with make_pool(unit_log_dir, size=2, handler_args=({1: 0.3},),
                   crash_policy=CrashPolicy.REPLACE) as pool:
        futures = [pool.dispatch(job(0, b"crash"))] + [pool.dispatch(job(i)) for i in range(1, 5)]

        with pytest.raises(UnitCrashError) as exc_info:
            futures[0].result(timeout=RESULT_TIMEOUT)
        assert exc_info.value.chunk_index == 0

        for future in futures[1:]:
            assert future.result(timeout=RESULT_TIMEOUT).payload == b"done:pcm"
        assert pool.state is PoolState.RUNNING


def test_crash_with_terminate_fails_everything(unit_log_dir):
    pool = make_pool(unit_log_dir, size=2, handler_args=({1: 5.0},),
                     crash_policy=CrashPolicy.TERMINATE)
    pool.initialize()
    try:
        crashed = pool.dispatch(job(0, b"crash"))
        others = [pool.dispatch(job(i)) for i in (1, 2, 3)]

        with pytest.raises(UnitCrashError):
            crashed.result(timeout=RESULT_TIMEOUT)
        for future in others:
            with pytest.raises(PoolTerminatedError):
                future.result(timeout=RESULT_TIMEOUT)

        assert pool.state is PoolState.TERMINATED
        with pytest.raises(PoolStateError):
            pool.dispatch(job(9))
    finally:
        pool.terminate()


def test_failed_replacement_retires_the_slot(tmp_path, unit_log_dir):
    marker = str(tmp_path / "crashed_once")
    pool = make_pool(unit_log_dir, size=1, handler_args=({}, marker, marker))
    pool.initialize()
    try:
        crashed = pool.dispatch(job(0, b"crash"))
        queued = pool.dispatch(job(1))

        with pytest.raises(UnitCrashError):
            crashed.result(timeout=RESULT_TIMEOUT)
        with pytest.raises(PoolExhaustedError):
            queued.result(timeout=RESULT_TIMEOUT)
        with pytest.raises(PoolExhaustedError):
            pool.dispatch(job(2))
    finally:
        pool.terminate()


def test_job_timeout_kills_and_replaces_the_unit(unit_log_dir):
    with make_pool(unit_log_dir, size=1, job_timeout=0.5) as pool:
        hung = pool.dispatch(job(0, b"hang"))
        queued = pool.dispatch(job(1))

        with pytest.raises(JobTimeoutError) as exc_info:
            hung.result(timeout=RESULT_TIMEOUT)
        assert isinstance(exc_info.value, UnitCrashError)
        assert queued.result(timeout=RESULT_TIMEOUT).payload == b"done:pcm"


def test_terminate_fails_pending_and_is_idempotent(unit_log_dir):
    pool = make_pool(unit_log_dir, size=1)
    pool.initialize()
    running = pool.dispatch(job(0, b"hang"))
    queued = pool.dispatch(job(1))
    time.sleep(0.2)

    pool.terminate()
    pool.terminate()

    for future in (running, queued):
        with pytest.raises(PoolTerminatedError):
            future.result(timeout=RESULT_TIMEOUT)
    assert pool.pending_count == 0
    assert pool.unit_status() == []
    with pytest.raises(PoolStateError):
        pool.dispatch(job(2))


def test_progress_sink_errors_are_contained(unit_log_dir):
    def broken_sink(event):
        raise RuntimeError("display gone")

    with make_pool(unit_log_dir, size=1) as pool:
        assert pool.dispatch(job(0), broken_sink).result(timeout=RESULT_TIMEOUT).chunk_index == 0


def test_concurrent_dispatch(unit_log_dir):
    with make_pool(unit_log_dir, size=2) as pool:
        futures = {}
        lock = threading.Lock()

        def submit(start):
            for i in range(start, start + 5):
                f = pool.dispatch(job(i))
                with lock:
                    futures[i] = f

        threads = [threading.Thread(target=submit, args=(s,)) for s in (0, 5, 10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        results = {i: f.result(timeout=RESULT_TIMEOUT).chunk_index for i, f in futures.items()}

    assert results == {i: i for i in range(15)}


def test_unit_dying_during_setup_fails_initialize(unit_log_dir):
    pool = make_pool(unit_log_dir, handler_args=scripted(exit_in_setup=True))

    with pytest.raises(SetupError) as exc_info:
        pool.initialize()

    assert "before becoming ready" in str(exc_info.value)
    assert pool.state is PoolState.TERMINATED


def test_init_timeout_fails_initialize(tmp_path, unit_log_dir):
    marker = tmp_path / "slow_engine"
    marker.touch()
    pool = make_pool(unit_log_dir, handler_args=scripted(hang_setup_if_exists=str(marker)),
                     init_timeout=1.0)

    with pytest.raises(SetupError) as exc_info:
        pool.initialize()

    assert "Timed out" in str(exc_info.value)
    assert pool.state is PoolState.TERMINATED


def test_replacement_stuck_in_setup_is_retired_while_others_serve(tmp_path, unit_log_dir):
    marker = str(tmp_path / "crashed")
    pool = make_pool(
        unit_log_dir, size=2, init_timeout=5.0,
        handler_args=scripted(delays={i: 0.2 for i in range(1, 6)},
                              crash_marker=marker, hang_setup_if_exists=marker),
    )
    pool.initialize()
    try:
        crashed = pool.dispatch(job(0, b"crash"))
        others = [pool.dispatch(job(i)) for i in range(1, 6)]

        with pytest.raises(UnitCrashError):
            crashed.result(timeout=RESULT_TIMEOUT)
        for future in others:
            assert future.result(timeout=RESULT_TIMEOUT).payload == b"done:pcm"

        deadline = time.monotonic() + RESULT_TIMEOUT
        while len(pool.unit_status()) > 1 and time.monotonic() < deadline:
            time.sleep(0.1)

        assert [u["ready"] for u in pool.unit_status()] == [True]
        assert pool.state is PoolState.RUNNING
        assert pool.dispatch(job(9)).result(timeout=RESULT_TIMEOUT).chunk_index == 9
    finally:
        pool.terminate()


def test_slow_progress_sink_does_not_delay_other_chunks(unit_log_dir):
    slow_sink_done = threading.Event()

    def slow_sink(event):
        time.sleep(2.0)
        if event.message == "finished":
            slow_sink_done.set()

    with make_pool(unit_log_dir, size=2, handler_args=scripted(delays={1: 0.3})) as pool:
        slow = pool.dispatch(job(0), slow_sink)
        started = time.monotonic()
        fast = pool.dispatch(job(1))

        fast.result(timeout=RESULT_TIMEOUT)
        fast_elapsed = time.monotonic() - started

        assert slow.result(timeout=RESULT_TIMEOUT).chunk_index == 0
        assert slow_sink_done.wait(timeout=RESULT_TIMEOUT)

    assert fast_elapsed < 1.5


def test_progress_relay_drops_events_when_full():
    relay = ProgressRelay(maxsize=2)
    delivered = []

    for index in range(5):
        relay.submit(delivered.append, ProgressEvent(0, index, "started"))
    assert relay.dropped == 3

    relay.start()
    relay.stop()
    assert [event.chunk_index for event in delivered] == [0, 1]


def test_terminate_closes_the_wake_pipe(unit_log_dir):
    with make_pool(unit_log_dir, size=1) as pool:
        assert not pool._wake_r.closed

    assert pool._wake_r.closed and pool._wake_w.closed
    pool.terminate()
