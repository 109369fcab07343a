"""
FFmpeg Engine

Thin wrapper around the ffmpeg CLI bound to a private working directory.
Every pass hands it an argument list; it returns the exit status and the
diagnostic text ffmpeg printed. All file names are relative to the
working directory, which is the engine's whole "filesystem".

Each execution unit owns one engine, and the coordinator owns another.
An engine is never used from two threads at once.

Example:
    >>> engine = FFmpegEngine()
    >>> engine.write_file("in.wav", data)
    >>> run = run_ffmpeg(engine, ["-i", "in.wav", "-f", "null", "-"])
    >>> print(run.diagnostics[-200:])
"""

import logging
import shutil
import subprocess
import tempfile
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

from lib.config import FFMPEG_BINARY, ENGINE_TIMEOUT, LOG_STORE_MAX_LINES

from .errors import EngineInvocationError, SetupError
from .log_parsers import EngineVersion, parse_ffmpeg_version

logger = logging.getLogger(__name__)


@dataclass
class EngineRun:
    """Outcome of a single engine invocation."""
    args: List[str]
    returncode: int
    diagnostics: str = field(repr=False)
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return "ffmpeg " + " ".join(self.args)


class LogStore:
    """Rolling buffer of engine diagnostics, newest last."""

    def __init__(self, max_lines: int = LOG_STORE_MAX_LINES):
        self._lines: Deque[str] = deque(maxlen=max_lines)

    def append(self, text: str) -> None:
        for line in text.splitlines():
            self._lines.append(line)

    def get(self) -> str:
        return "\n".join(self._lines)

    def tail(self, n: int = 40) -> str:
        return "\n".join(list(self._lines)[-n:])

    def clear(self) -> None:
        self._lines.clear()


def check_ffmpeg(binary: str = FFMPEG_BINARY) -> None:
    """Verify FFmpeg is installed and accessible."""
    try:
        result = subprocess.run(
            [binary, "-version"],
            capture_output=True,
            text=True,
            timeout=5
        )
    except FileNotFoundError:
        raise SetupError(
            f"FFmpeg not found ({binary}). Please install: brew install ffmpeg / apt install ffmpeg"
        )
    except subprocess.TimeoutExpired:
        raise SetupError("FFmpeg check timed out")

    if result.returncode != 0:
        raise SetupError("FFmpeg is not working properly")


class FFmpegEngine:
    """
    FFmpeg bound to a working directory.

    Args:
        working_dir: Directory the engine reads and writes in. A private
                     temp dir is created (and removed on close) when omitted.
        binary: ffmpeg executable
        timeout: Upper bound per invocation in seconds
        on_command: Optional callback receiving each command line before it runs
    """

    def __init__(
        self,
        working_dir: Optional[Union[str, Path]] = None,
        binary: str = FFMPEG_BINARY,
        timeout: Optional[float] = ENGINE_TIMEOUT,
        on_command: Optional[Callable[[str], None]] = None,
    ):
        if working_dir is None:
            self.working_dir = Path(tempfile.mkdtemp(prefix="podmaster_"))
            self._owns_dir = True
        else:
            self.working_dir = Path(working_dir)
            self.working_dir.mkdir(parents=True, exist_ok=True)
            self._owns_dir = False

        self.binary = binary
        self.timeout = timeout
        self.on_command = on_command
        self.log_store = LogStore()

    # ==================== Execution ====================

    def execute(self, args: List[str]) -> EngineRun:
        """Run ffmpeg with ``args`` inside the working directory."""
        args = [str(a) for a in args]
        cmd = [self.binary, "-nostdin", "-y"] + args
        command_line = "ffmpeg " + " ".join(args)

        logger.debug(f"Executing FFmpeg command: {command_line}")
        if self.on_command:
            self.on_command(command_line)

        start_time = time.time()
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.working_dir),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            # TimeoutExpired carries bytes even with text=True
            raw = e.stderr or b""
            diagnostics = raw.decode(errors="replace") if isinstance(raw, bytes) else raw
            self.log_store.append(diagnostics)
            return EngineRun(args=args, returncode=-1,
                             diagnostics=diagnostics + f"\nTimed out after {self.timeout}s",
                             elapsed=time.time() - start_time)

        diagnostics = (result.stdout or "") + (result.stderr or "")
        self.log_store.append(diagnostics)

        return EngineRun(
            args=args,
            returncode=result.returncode,
            diagnostics=diagnostics,
            elapsed=time.time() - start_time,
        )

    def version(self) -> EngineVersion:
        """Parse `ffmpeg -version` output."""
        result = subprocess.run(
            [self.binary, "-hide_banner", "-version"],
            capture_output=True,
            text=True,
            timeout=10
        )
        return parse_ffmpeg_version(result.stdout)

    # ==================== Working Directory ====================

    def _resolve(self, name: str) -> Path:
        path = (self.working_dir / name).resolve()
        root = self.working_dir.resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Path escapes the working directory: {name}")
        return path

    def write_file(self, name: str, data: Union[bytes, str]) -> None:
        path = self._resolve(name)
        if isinstance(data, str):
            path.write_text(data, encoding="utf-8")
        else:
            path.write_bytes(data)

    def read_file(self, name: str) -> bytes:
        return self._resolve(name).read_bytes()

    def delete_file(self, name: str) -> None:
        self._resolve(name).unlink()

    def create_dir(self, name: str) -> None:
        self._resolve(name).mkdir(parents=True, exist_ok=True)

    def list_dir(self, name: str = ".") -> List[str]:
        return sorted(p.name for p in self._resolve(name).iterdir())

    def exists(self, name: str) -> bool:
        """Existence check by directory listing, not by trusting exit codes."""
        path = Path(name)
        parent = str(path.parent) if str(path.parent) else "."
        try:
            return path.name in self.list_dir(parent)
        except FileNotFoundError:
            return False

    def close(self) -> None:
        if self._owns_dir and self.working_dir.exists():
            shutil.rmtree(self.working_dir, ignore_errors=True)


def run_ffmpeg(engine, args: List[str]) -> EngineRun:
    """
    Execute an engine command and raise on failure.

    Raises:
        EngineInvocationError: with the failing args and captured diagnostics
    """
    run = engine.execute(args)
    if not run.ok:
        logger.error(f"FFmpeg error ({run.returncode}): {run.command}")
        raise EngineInvocationError(args, run.returncode, run.diagnostics)
    return run
