"""In-memory stand-ins for the engine and the pool."""

import math
import re
from concurrent.futures import Future
from typing import Dict, List, Optional, Sequence

from app.services.mastering_pipeline.engine import EngineRun, LogStore
from app.services.mastering_pipeline.jobs import ChunkResult, ProgressEvent

LOUDNORM_JSON = """[Parsed_loudnorm_4 @ 0x600003a1c000]
{
\t"input_i" : "-20.50",
\t"input_tp" : "-3.20",
\t"input_lra" : "6.10",
\t"input_thresh" : "-31.00",
\t"output_i" : "-14.02",
\t"output_tp" : "-1.00",
\t"output_lra" : "5.30",
\t"output_thresh" : "-24.50",
\t"normalization_type" : "dynamic",
\t"target_offset" : "0.30"
}
"""


def stream_banner(duration: float, layout: str) -> str:
    hours = int(duration // 3600)
    minutes = int(duration % 3600 // 60)
    seconds = int(duration % 60)
    centis = int(round((duration - int(duration)) * 100))
    return (
        "Input #0, wav, from 'sanitized_audio.wav':\n"
        f"  Duration: {hours:02d}:{minutes:02d}:{seconds:02d}.{centis:02d}, bitrate: 1411 kb/s\n"
        "  Stream #0:0: Audio: pcm_s16le ([1][0][0][0] / 0x0001), "
        f"44100 Hz, {layout}, s16, 1411 kb/s\n"
        "size=N/A time=00:10:10.00 bitrate=N/A speed= 812x\n"
    )


class FakeEngine:
    """
    Simulates ffmpeg by reading the argument list.

    Files live in a dict. Loudness/stream diagnostics and the ametadata
    report are synthesized; every other command writes ``<tag>:<input>``
    to its last argument.
    """

    def __init__(
        self,
        duration: float = 610.0,
        layout: str = "stereo",
        rms_value: str = "-20.000000",
        loudness_json: bool = True,
        fail_on: Optional[str] = None,
        missing_outputs: Sequence[str] = (),
        on_command=None,
    ):
        self.duration = duration
        self.layout = layout
        self.rms_value = rms_value
        self.loudness_json = loudness_json
        self.fail_on = fail_on
        self.missing_outputs = set(missing_outputs)
        self.on_command = on_command

        self.files: Dict[str, bytes] = {}
        self.commands: List[List[str]] = []
        self.log_store = LogStore()
        self.closed = False

    # ---- execution ----

    def execute(self, args) -> EngineRun:
        args = [str(a) for a in args]
        self.commands.append(args)
        command_line = "ffmpeg " + " ".join(args)
        if self.on_command:
            self.on_command(command_line)

        if self.fail_on and self.fail_on in command_line:
            run = EngineRun(args=args, returncode=1, diagnostics="Error: simulated engine failure")
            self.log_store.append(run.diagnostics)
            return run

        diagnostics = self._simulate(args)
        self.log_store.append(diagnostics)
        return EngineRun(args=args, returncode=0, diagnostics=diagnostics)

    def _arg_after(self, args, flag) -> Optional[str]:
        return args[args.index(flag) + 1] if flag in args else None

    def _produce(self, name: str, data: bytes) -> None:
        if name not in self.missing_outputs:
            self.files[name] = data

    def _simulate(self, args: List[str]) -> str:
        input_name = self._arg_after(args, "-i")
        output = args[-1]
        fmt = self._arg_after(args, "-f")
        af = self._arg_after(args, "-af") or ""

        if fmt == "segment":
            segment_time = float(self._arg_after(args, "-segment_time"))
            count = int(math.ceil(self.duration / segment_time))
            for i in range(count):
                self._produce(output % i, f"pcm-chunk-{i}".encode())
            return stream_banner(self.duration, self.layout)

        if fmt == "concat":
            listing = self.files[input_name].decode()
            names = re.findall(r"file '([^']+)'", listing)
            self._produce(output, b"".join(self.files[n] for n in names))
            return ""

        if "print_format=json" in af:
            return stream_banner(self.duration, self.layout) + (LOUDNORM_JSON if self.loudness_json else "")

        if af.startswith("astats"):
            report = af.split("file=", 1)[1]
            self._produce(report, (
                "frame:0    pts:0       pts_time:0\n"
                "lavfi.astats.Overall.RMS_level=-35.000000\n"
                "frame:1    pts:4410    pts_time:0.1\n"
                f"lavfi.astats.Overall.RMS_level={self.rms_value}\n"
            ).encode())
            return ""

        if output == "-":
            return stream_banner(self.duration, self.layout)

        tag = "norm" if output.endswith("_norm.wav") else "encoded"
        self._produce(output, f"{tag}:".encode() + self.files[input_name])
        return ""

    # ---- working directory ----

    def write_file(self, name, data) -> None:
        self.files[name] = data.encode("utf-8") if isinstance(data, str) else bytes(data)

    def read_file(self, name) -> bytes:
        if name not in self.files:
            raise FileNotFoundError(name)
        return self.files[name]

    def delete_file(self, name) -> None:
        if name not in self.files:
            raise FileNotFoundError(name)
        del self.files[name]

    def create_dir(self, name) -> None:
        pass

    def list_dir(self, name=".") -> List[str]:
        return sorted(self.files)

    def exists(self, name) -> bool:
        return name in self.files

    def close(self) -> None:
        self.closed = True


class FakePool:
    """
    Settles futures in ``completion_order`` once ``expected_jobs`` have been dispatched.

    ``fail_index`` settles that chunk with ``error`` instead of a result.
    """

    def __init__(self, expected_jobs: int, completion_order: Sequence[int] = None,
                 fail_index: Optional[int] = None, error: Optional[BaseException] = None):
        self.expected_jobs = expected_jobs
        self.completion_order = list(completion_order or range(expected_jobs))
        self.fail_index = fail_index
        self.error = error
        self.jobs = []
        self.settled_order: List[int] = []

    def dispatch(self, job, progress_sink=None) -> Future:
        future = Future()
        self.jobs.append((job, future, progress_sink))
        if len(self.jobs) == self.expected_jobs:
            self._settle_all()
        return future

    def _settle_all(self) -> None:
        by_index = {job.chunk_index: (job, future, sink) for job, future, sink in self.jobs}
        for index in self.completion_order:
            job, future, sink = by_index[index]
            if sink:
                sink(ProgressEvent(unit_id=index % 2, chunk_index=index, message="Pass 4/4"))
            self.settled_order.append(index)
            if index == self.fail_index:
                future.set_exception(self.error)
            else:
                future.set_result(ChunkResult(index, f"[m{index}]".encode()))
