"""
Parsers for ffmpeg diagnostic text.

Pure functions: text in, numbers out. Each raises a PostconditionError
subclass when the value the pipeline depends on is not there, since a
zero exit status alone says nothing about whether a measurement was
actually printed.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Optional

from .errors import LoudnessParseError, RmsParseError, StreamInfoError
from .jobs import ChannelLayout

DURATION_REGEX = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2})\.(\d{2})")
STREAM_LAYOUT_REGEX = re.compile(r"Stream #\d+:\d+.*: Audio: .*?, (stereo|mono),")
RMS_LEVEL_REGEX = re.compile(r"Overall\.RMS_level=(\S+)")
VERSION_STRING_REGEX = re.compile(r"ffmpeg version (\d+\.\d+)")
COMPILER_REGEX = re.compile(r"built with\s+(.*)")


@dataclass(frozen=True)
class LoudnessMeasurement:
    """First-pass loudnorm measurements, fed back into the correction pass."""
    input_i: float
    input_tp: float
    input_lra: float
    input_thresh: float
    target_offset: float


@dataclass(frozen=True)
class StreamInfo:
    duration: float
    channel_layout: ChannelLayout


@dataclass(frozen=True)
class EngineVersion:
    version: Optional[float]
    compiler: Optional[str]


def parse_loudness(log_text: str) -> LoudnessMeasurement:
    """
    Extract the trailing loudnorm JSON block from ffmpeg's log.

    loudnorm prints its measurements last, so the block is delimited by
    the last '{' and the last '}' in the text.

    Raises:
        LoudnessParseError: if no block is found or it does not parse
    """
    json_start = log_text.rfind("{")
    json_end = log_text.rfind("}")
    if json_start == -1 or json_end == -1 or json_end < json_start:
        raise LoudnessParseError(
            "Log Parser Failed: Could not find the loudnorm JSON block in the FFmpeg logs."
        )

    try:
        parsed = json.loads(log_text[json_start:json_end + 1])
        return LoudnessMeasurement(
            input_i=float(parsed["input_i"]),
            input_tp=float(parsed["input_tp"]),
            input_lra=float(parsed["input_lra"]),
            input_thresh=float(parsed["input_thresh"]),
            target_offset=float(parsed["target_offset"]),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise LoudnessParseError(
            f"Log Parser Failed: Could not parse the loudnorm JSON data. Details: {e}"
        ) from e


def parse_rms_level(file_content: str) -> float:
    """
    Read Overall.RMS_level (dB) from an ametadata report.

    The report has one block per frame and the Overall figures are
    cumulative, so the last occurrence describes the whole chunk.
    Silence is reported as ``-inf`` and maps to 0.00.

    Raises:
        RmsParseError: if the key is missing or its value is not a finite number
    """
    matches = RMS_LEVEL_REGEX.findall(file_content)
    if not matches:
        raise RmsParseError(
            "Log Parser Failed: Could not find Overall.RMS_level in the analysis file."
        )

    raw = matches[-1].strip()
    if raw == "-inf":
        return 0.00

    try:
        value = float(raw)
    except ValueError:
        raise RmsParseError(f"Failed to parse a valid RMS level: {raw!r}")
    if not math.isfinite(value):
        raise RmsParseError(f"Failed to parse a valid RMS level: {raw!r}")
    return value


def parse_stream_info(log_text: str) -> StreamInfo:
    """
    Read duration and mono/stereo layout from ffmpeg's input banner.

    Raises:
        StreamInfoError: if either value cannot be matched
    """
    duration_match = DURATION_REGEX.search(log_text)
    if not duration_match:
        raise StreamInfoError("Step 1 Failed: Could not determine audio duration.")
    hours, minutes, seconds, centiseconds = (int(g) for g in duration_match.groups())
    duration = hours * 3600 + minutes * 60 + seconds + centiseconds / 100

    stream_match = STREAM_LAYOUT_REGEX.search(log_text)
    if not stream_match:
        raise StreamInfoError(
            "Step 1 Failed: Could not determine audio channel layout (mono/stereo) from the FFmpeg log."
        )

    return StreamInfo(duration=duration, channel_layout=ChannelLayout(stream_match.group(1)))


def parse_ffmpeg_version(version_output: str) -> EngineVersion:
    """Version number (e.g. 7.1) and compiler line from `ffmpeg -version`."""
    lines = version_output.strip().splitlines()
    version = None
    compiler = None

    if lines:
        version_match = VERSION_STRING_REGEX.search(lines[0])
        if version_match:
            version = float(version_match.group(1))

    if len(lines) > 1:
        compiler_match = COMPILER_REGEX.search(lines[1])
        if compiler_match:
            compiler = compiler_match.group(1).strip()

    return EngineVersion(version=version, compiler=compiler)
