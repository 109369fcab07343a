import pytest

from app.services.mastering_pipeline.errors import ProtocolError
from app.services.mastering_pipeline.jobs import ChannelLayout, Job, MasteringOptions
from app.services.mastering_pipeline.messages import (
    Failure,
    InitRequest,
    Progress,
    ProcessRequest,
    Ready,
    SetupFailed,
    ShutdownRequest,
    Success,
    decode_request,
    decode_response,
)


def test_process_request_carries_the_job():
    job = Job(3, b"pcm", ChannelLayout.MONO, MasteringOptions(gate=False))
    message = ProcessRequest(job).to_message()
    assert message == {
        "command": "process",
        "chunk_index": 3,
        "payload": b"pcm",
        "channel_layout": "mono",
        "options": {"gate": False, "clarity": True, "tonal": True, "soft_clip": True},
    }
    assert decode_request(message) == ProcessRequest(job)


def test_control_requests():
    assert decode_request(InitRequest().to_message()) == InitRequest()
    assert decode_request(ShutdownRequest().to_message()) == ShutdownRequest()


def test_missing_options_keep_every_stage_enabled():
    request = decode_request({"command": "process", "chunk_index": 0,
                              "payload": b"", "channel_layout": "stereo"})
    assert request.job.options == MasteringOptions()


def test_partial_options_only_change_the_given_stages():
    request = decode_request({"command": "process", "chunk_index": 0, "payload": b"",
                              "channel_layout": "mono", "options": {"gate": False}})
    assert request.job.options == MasteringOptions(gate=False)


@pytest.mark.parametrize("raw", [
    {"command": "explode"},
    {"command": "process", "chunk_index": 0, "payload": b""},
    {"command": "process", "chunk_index": 0, "payload": b"", "channel_layout": "5.1"},
    ["not", "a", "dict"],
])
def test_bad_requests(raw):
    with pytest.raises(ProtocolError):
        decode_request(raw)


def test_responses_decode_to_tagged_types():
    assert decode_response({"status": "ready"}) == Ready()
    assert decode_response({"status": "progress", "chunk_index": 1, "message": "Pass 1/4"}) == \
        Progress(1, "Pass 1/4")
    assert decode_response({"status": "success", "chunk_index": 2, "payload": b"mp3"}) == \
        Success(2, b"mp3")
    assert decode_response({"status": "error", "chunk_index": 2, "detail": "boom"}) == \
        Failure(2, "boom")


def test_error_without_chunk_index_is_setup_failure():
    assert decode_response({"status": "error", "detail": "no ffmpeg"}) == SetupFailed("no ffmpeg")
    assert decode_response(SetupFailed("x").to_message()) == SetupFailed("x")


def test_failure_round_trip_keeps_chunk_index():
    assert decode_response(Failure(0, "boom").to_message()) == Failure(0, "boom")


@pytest.mark.parametrize("raw", [
    {"status": "finished"},
    {"status": "success", "chunk_index": 1},
    {"status": "progress"},
    None,
])
def test_bad_responses(raw):
    with pytest.raises(ProtocolError):
        decode_response(raw)
