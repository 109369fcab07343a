import subprocess

import pytest

from app.services.mastering_pipeline import engine as engine_module
from app.services.mastering_pipeline.engine import FFmpegEngine, LogStore, check_ffmpeg, run_ffmpeg
from app.services.mastering_pipeline.errors import EngineInvocationError, SetupError


@pytest.fixture
def workdir_engine(tmp_path):
    return FFmpegEngine(working_dir=tmp_path / "work")


def test_file_operations(workdir_engine):
    workdir_engine.write_file("a.wav", b"\x00\x01")
    workdir_engine.write_file("list.txt", "file 'a.wav'\n")
    workdir_engine.create_dir("sub")

    assert workdir_engine.read_file("a.wav") == b"\x00\x01"
    assert workdir_engine.read_file("list.txt") == b"file 'a.wav'\n"
    assert workdir_engine.list_dir() == ["a.wav", "list.txt", "sub"]
    assert workdir_engine.exists("a.wav")

    workdir_engine.delete_file("a.wav")
    assert not workdir_engine.exists("a.wav")
    assert not workdir_engine.exists("missing/b.wav")


def test_paths_cannot_escape_working_dir(workdir_engine):
    with pytest.raises(ValueError):
        workdir_engine.write_file("../outside.wav", b"")


def test_owned_temp_dir_is_removed_on_close():
    engine = FFmpegEngine()
    working_dir = engine.working_dir
    engine.write_file("x.wav", b"data")
    engine.close()
    assert not working_dir.exists()


def test_given_dir_is_kept_on_close(workdir_engine):
    workdir_engine.close()
    assert workdir_engine.working_dir.exists()


def test_execute_runs_in_working_dir(workdir_engine, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="Duration: 00:00:01.00")

    monkeypatch.setattr(engine_module.subprocess, "run", fake_run)
    seen = []
    workdir_engine.on_command = seen.append

    run = workdir_engine.execute(["-i", "a.wav", "-f", "null", "-"])

    cmd, kwargs = calls[0]
    assert cmd[1:3] == ["-nostdin", "-y"]
    assert cmd[3:] == ["-i", "a.wav", "-f", "null", "-"]
    assert kwargs["cwd"] == str(workdir_engine.working_dir)
    assert run.ok
    assert run.diagnostics == "Duration: 00:00:01.00"
    assert seen == ["ffmpeg -i a.wav -f null -"]
    assert workdir_engine.log_store.get() == "Duration: 00:00:01.00"


def test_run_ffmpeg_raises_with_diagnostics(workdir_engine, monkeypatch):
    monkeypatch.setattr(
        engine_module.subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Invalid filter")
    )

    with pytest.raises(EngineInvocationError) as exc_info:
        run_ffmpeg(workdir_engine, ["-i", "a.wav", "-af", "nope", "out.wav"])

    error = exc_info.value
    assert error.returncode == 1
    assert error.args_list == ["-i", "a.wav", "-af", "nope", "out.wav"]
    assert error.diagnostics == "Invalid filter"
    assert "ffmpeg -i a.wav -af nope out.wav" in str(error)


def test_execute_timeout_is_a_failed_run(workdir_engine, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, 5, stderr=b"partial output")

    monkeypatch.setattr(engine_module.subprocess, "run", fake_run)
    run = workdir_engine.execute(["-i", "a.wav", "out.wav"])

    assert run.returncode == -1
    assert "partial output" in run.diagnostics


def test_check_ffmpeg_missing_binary():
    with pytest.raises(SetupError):
        check_ffmpeg("definitely-not-an-ffmpeg-binary")


def test_version(workdir_engine, monkeypatch):
    monkeypatch.setattr(
        engine_module.subprocess, "run",
        lambda cmd, **kwargs: subprocess.CompletedProcess(
            cmd, 0, stdout="ffmpeg version 6.1 Copyright (c) 2000-2023\nbuilt with gcc 12 (Debian)\n", stderr=""
        )
    )
    info = workdir_engine.version()
    assert info.version == pytest.approx(6.1)
    assert info.compiler == "gcc 12 (Debian)"


def test_log_store_is_bounded():
    store = LogStore(max_lines=3)
    store.append("one\ntwo")
    store.append("three\nfour")
    assert store.get() == "two\nthree\nfour"
    assert store.tail(2) == "three\nfour"
    store.clear()
    assert store.get() == ""
