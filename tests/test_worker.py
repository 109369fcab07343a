import multiprocessing

import pytest

from app.services.mastering_pipeline import worker as worker_module
from app.services.mastering_pipeline.jobs import ChannelLayout, Job
from app.services.mastering_pipeline.messages import (
    Failure,
    InitRequest,
    ProcessRequest,
    Progress,
    Ready,
    SetupFailed,
    ShutdownRequest,
    Success,
    decode_response,
)
from app.services.mastering_pipeline.worker import unit_main
from tests.pool_handlers import ScriptedHandler


@pytest.fixture(autouse=True)
def keep_sigint(monkeypatch):
    monkeypatch.setattr(worker_module.signal, "signal", lambda *args: None)


def run_unit(requests, unit_log_dir, handler_args=()):
    """Queue requests, run the unit loop to completion, return decoded responses."""
    parent_conn, child_conn = multiprocessing.Pipe(duplex=True)
    for request in requests:
        parent_conn.send(request if isinstance(request, dict) else request.to_message())

    unit_main(5, child_conn, ScriptedHandler, handler_args, unit_log_dir)

    responses = []
    while parent_conn.poll():
        try:
            responses.append(decode_response(parent_conn.recv()))
        except (EOFError, OSError):
            break
    return responses


def test_init_process_shutdown(unit_log_dir):
    job = Job(2, b"pcm", ChannelLayout.STEREO)
    responses = run_unit([InitRequest(), ProcessRequest(job), ShutdownRequest()], unit_log_dir)

    assert responses == [
        Ready(),
        Progress(2, "started"),
        Progress(2, "finished"),
        Success(2, b"done:pcm"),
    ]


def test_job_failure_carries_traceback(unit_log_dir):
    job = Job(4, b"error", ChannelLayout.MONO)
    responses = run_unit([InitRequest(), ProcessRequest(job), ShutdownRequest()], unit_log_dir)

    failure = responses[-1]
    assert isinstance(failure, Failure)
    assert failure.chunk_index == 4
    assert "bad chunk 4" in failure.detail
    assert "Traceback" in failure.detail


def test_unit_keeps_serving_after_a_failed_job(unit_log_dir):
    responses = run_unit([
        InitRequest(),
        ProcessRequest(Job(0, b"error", ChannelLayout.MONO)),
        ProcessRequest(Job(1, b"ok", ChannelLayout.MONO)),
        ShutdownRequest(),
    ], unit_log_dir)

    assert isinstance(responses[-1], Success)
    assert responses[-1].chunk_index == 1


def test_setup_failure_ends_the_unit(tmp_path, unit_log_dir):
    marker = tmp_path / "no_engine"
    marker.touch()
    responses = run_unit(
        [InitRequest(), ProcessRequest(Job(0, b"pcm", ChannelLayout.MONO))],
        unit_log_dir,
        handler_args=({}, str(marker)),
    )

    assert len(responses) == 1
    assert isinstance(responses[0], SetupFailed)
    assert "engine unavailable" in responses[0].detail


def test_process_before_init_is_rejected(unit_log_dir):
    responses = run_unit(
        [ProcessRequest(Job(0, b"pcm", ChannelLayout.MONO)), ShutdownRequest()], unit_log_dir
    )
    assert responses == [Failure(0, "Unit is not initialized")]


def test_malformed_request_is_skipped(unit_log_dir):
    responses = run_unit([{"command": "dance"}, InitRequest(), ShutdownRequest()], unit_log_dir)
    assert responses == [Ready()]


def test_unit_writes_its_own_log(unit_log_dir):
    run_unit([InitRequest(), ShutdownRequest()], unit_log_dir)
    with open(f"{unit_log_dir}/unit_5.log") as f:
        content = f.read()
    assert "[Unit 5]" in content
    assert "Ready" in content
