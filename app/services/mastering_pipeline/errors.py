"""
Error types raised by the mastering pipeline.

Every failure in the core is one of these, so callers can tell a unit
that never came up (SetupError) from an engine that rejected a filter
graph (EngineInvocationError) or a chunk that was lost with its unit
(UnitCrashError).
"""

from typing import List, Optional


class MasteringError(Exception):
    """Base error for the mastering pipeline."""


class SetupError(MasteringError):
    """An execution unit failed its readiness handshake."""

    def __init__(self, message: str, unit_id: Optional[int] = None):
        super().__init__(message)
        self.unit_id = unit_id


class EngineInvocationError(MasteringError):
    """The codec engine reported failure for one invocation."""

    def __init__(self, args: List[str], returncode: int, diagnostics: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.diagnostics = diagnostics
        command = " ".join(self.args_list)
        super().__init__(
            f"FFmpeg command failed with exit code {returncode}\n\n"
            f"Failed Command:\nffmpeg {command}"
        )


class PostconditionError(MasteringError):
    """The engine reported success but an expected artifact or value is missing."""


class LoudnessParseError(PostconditionError):
    """The loudnorm JSON block is missing or malformed."""


class RmsParseError(PostconditionError):
    """Overall.RMS_level is missing or not a number."""


class StreamInfoError(PostconditionError):
    """Duration or channel layout could not be read from the stream info."""


class AssemblyError(PostconditionError):
    """Concatenation finished but the final artifact is missing."""


class ChunkProcessingError(MasteringError):
    """A unit reported that its chunk failed."""

    def __init__(self, chunk_index: int, detail: str):
        super().__init__(f"Chunk {chunk_index} failed: {detail}")
        self.chunk_index = chunk_index
        self.detail = detail


class UnitCrashError(MasteringError):
    """A unit died or stopped talking while holding a job."""

    def __init__(self, unit_id: int, chunk_index: int, reason: str = ""):
        message = f"Worker {unit_id} crashed while processing chunk {chunk_index}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.unit_id = unit_id
        self.chunk_index = chunk_index
        self.reason = reason


class JobTimeoutError(UnitCrashError):
    """A job exceeded the pool's job timeout; its unit was abandoned."""

    def __init__(self, unit_id: int, chunk_index: int, timeout: float):
        super().__init__(unit_id, chunk_index, f"No result after {timeout:.1f}s.")
        self.timeout = timeout


class PoolStateError(MasteringError):
    """The pool cannot accept work in its current state."""


class PoolTerminatedError(PoolStateError):
    """The pool was terminated before the job settled."""


class PoolExhaustedError(PoolStateError):
    """Every unit slot has been retired after failed replacements."""


class ProtocolError(MasteringError):
    """A unit sent a message that does not fit the transport protocol."""
