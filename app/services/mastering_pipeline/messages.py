"""
Transport messages between the coordinator and execution units.

Units and the coordinator exchange plain dicts over a multiprocessing
Pipe. They are decoded into the tagged dataclasses below exactly once,
at the boundary, so the scheduler only ever branches on types.

Requests (coordinator -> unit):
    {"command": "init"}
    {"command": "process", "chunk_index", "payload", "channel_layout", "options"}
    {"command": "shutdown"}

Responses (unit -> coordinator):
    {"status": "ready"}
    {"status": "error", "detail"}                       # setup failure
    {"status": "progress", "chunk_index", "message"}
    {"status": "success", "chunk_index", "payload"}
    {"status": "error", "chunk_index", "detail"}        # job failure
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Union

from .errors import ProtocolError
from .jobs import ChannelLayout, Job, MasteringOptions


# ============================================================================
# Requests
# ============================================================================

@dataclass(frozen=True)
class InitRequest:
    def to_message(self) -> Dict[str, Any]:
        return {"command": "init"}


@dataclass(frozen=True)
class ProcessRequest:
    job: Job

    def to_message(self) -> Dict[str, Any]:
        return {
            "command": "process",
            "chunk_index": self.job.chunk_index,
            "payload": self.job.payload,
            "channel_layout": self.job.channel_layout.value,
            "options": self.job.options.to_dict(),
        }


@dataclass(frozen=True)
class ShutdownRequest:
    def to_message(self) -> Dict[str, Any]:
        return {"command": "shutdown"}


Request = Union[InitRequest, ProcessRequest, ShutdownRequest]


def decode_request(raw: Dict[str, Any]) -> Request:
    """Decode a request dict received by a unit."""
    if not isinstance(raw, dict):
        raise ProtocolError(f"Expected a dict request, got {type(raw).__name__}")

    command = raw.get("command")
    if command == "init":
        return InitRequest()
    if command == "shutdown":
        return ShutdownRequest()
    if command == "process":
        try:
            job = Job(
                chunk_index=int(raw["chunk_index"]),
                payload=raw["payload"],
                channel_layout=ChannelLayout(raw["channel_layout"]),
                options=MasteringOptions.from_dict(raw.get("options")),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ProtocolError(f"Malformed process request: {e}") from e
        return ProcessRequest(job=job)
    raise ProtocolError(f"Unknown command: {command!r}")


# ============================================================================
# Responses
# ============================================================================

@dataclass(frozen=True)
class Ready:
    def to_message(self) -> Dict[str, Any]:
        return {"status": "ready"}


@dataclass(frozen=True)
class SetupFailed:
    detail: str

    def to_message(self) -> Dict[str, Any]:
        return {"status": "error", "detail": self.detail}


@dataclass(frozen=True)
class Progress:
    chunk_index: int
    message: str

    def to_message(self) -> Dict[str, Any]:
        return {"status": "progress", "chunk_index": self.chunk_index, "message": self.message}


@dataclass(frozen=True)
class Success:
    chunk_index: int
    payload: bytes = field(repr=False)

    def to_message(self) -> Dict[str, Any]:
        return {"status": "success", "chunk_index": self.chunk_index, "payload": self.payload}


@dataclass(frozen=True)
class Failure:
    chunk_index: int
    detail: str

    def to_message(self) -> Dict[str, Any]:
        return {"status": "error", "chunk_index": self.chunk_index, "detail": self.detail}


Response = Union[Ready, SetupFailed, Progress, Success, Failure]


def decode_response(raw: Dict[str, Any]) -> Response:
    """Decode a response dict received by the coordinator."""
    if not isinstance(raw, dict):
        raise ProtocolError(f"Expected a dict response, got {type(raw).__name__}")

    status = raw.get("status")
    try:
        if status == "ready":
            return Ready()
        if status == "progress":
            return Progress(chunk_index=int(raw["chunk_index"]), message=str(raw.get("message", "")))
        if status == "success":
            return Success(chunk_index=int(raw["chunk_index"]), payload=raw["payload"])
        if status == "error":
            detail = str(raw.get("detail", "Unknown error"))
            # Job failures carry the chunk index; setup failures do not
            if raw.get("chunk_index") is None:
                return SetupFailed(detail=detail)
            return Failure(chunk_index=int(raw["chunk_index"]), detail=detail)
    except (KeyError, ValueError, TypeError) as e:
        raise ProtocolError(f"Malformed {status!r} response: {e}") from e
    raise ProtocolError(f"Unknown status: {status!r}")
