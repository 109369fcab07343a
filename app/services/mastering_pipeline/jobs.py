"""
Data model shared by the coordinator and the execution units.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional


class ChannelLayout(str, Enum):
    MONO = "mono"
    STEREO = "stereo"


@dataclass(frozen=True)
class MasteringOptions:
    """User-selectable stages of the final dynamics chain."""
    gate: bool = True
    clarity: bool = True
    tonal: bool = True
    soft_clip: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MasteringOptions":
        """Missing keys keep the dataclass default (enabled)."""
        data = data or {}
        defaults = cls()
        return cls(**{
            name: bool(data.get(name, getattr(defaults, name)))
            for name in defaults.to_dict()
        })


@dataclass(frozen=True)
class Job:
    """One chunk of audio to master. Immutable; handed to the pool at dispatch."""
    chunk_index: int
    payload: bytes = field(repr=False)
    channel_layout: ChannelLayout
    options: MasteringOptions = field(default_factory=MasteringOptions)


@dataclass(frozen=True)
class ChunkResult:
    chunk_index: int
    payload: bytes = field(repr=False)


@dataclass(frozen=True)
class ProgressEvent:
    unit_id: int
    chunk_index: int
    message: str


@dataclass(frozen=True)
class PipelineUpdate:
    """Coordinator-side progress for the presentation layer."""
    step: int
    total_steps: int
    message: str
    duration: Optional[float] = None
    chunks_done: Optional[int] = None
    chunks_total: Optional[int] = None
    command: Optional[str] = None


@dataclass
class PipelineResult:
    """Outcome of one orchestrator run: either a final payload or an error."""
    elapsed_time: float
    final_payload: Optional[bytes] = field(default=None, repr=False)
    total_duration: Optional[float] = None
    error: Optional[BaseException] = None
    output_format: str = "mp3"

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def succeeded(cls, payload: bytes, total_duration: float, elapsed_time: float,
                  output_format: str = "mp3") -> "PipelineResult":
        return cls(elapsed_time=elapsed_time, final_payload=payload,
                   total_duration=total_duration, output_format=output_format)

    @classmethod
    def failed(cls, error: BaseException, elapsed_time: float) -> "PipelineResult":
        return cls(elapsed_time=elapsed_time, error=error)
