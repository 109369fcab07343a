"""
Pass Executors

Each function runs exactly one engine invocation for one chunk and
returns either a measurement or the name of the file it produced.
Intermediates live in the unit's working directory and are named after
the chunk:

    <base>_norm.wav        normalized audio (pass 2 -> pass 4)
    <base>_rms.txt         ametadata report (pass 3, always deleted)
    <base>_mastered.<fmt>  final encoded chunk (pass 4)

Existence checks go through the engine's directory listing; an exit
status of 0 is not trusted on its own.
"""

import logging
from pathlib import PurePosixPath

from lib.config import OUTPUT_FORMAT

from .engine import run_ffmpeg
from .errors import PostconditionError, RmsParseError
from .filter_graph import (
    build_loudness_analysis_filter,
    build_loudness_correction_filter,
    build_rms_analysis_filter,
    build_mastering_filters,
    encoder_args,
)
from .jobs import ChannelLayout, MasteringOptions
from .log_parsers import LoudnessMeasurement, parse_loudness, parse_rms_level

logger = logging.getLogger(__name__)


def chunk_base(name: str) -> str:
    """'chunk_0003.wav' and 'chunk_0003_norm.wav' -> 'chunk_0003'"""
    stem = PurePosixPath(name).stem
    if stem.endswith("_norm"):
        stem = stem[:-len("_norm")]
    return stem


def normalized_name(input_name: str) -> str:
    return f"{chunk_base(input_name)}_norm.wav"


def rms_report_name(norm_name: str) -> str:
    return f"{chunk_base(norm_name)}_rms.txt"


def mastered_name(norm_name: str, output_format: str = OUTPUT_FORMAT) -> str:
    return f"{chunk_base(norm_name)}_mastered.{output_format}"


def _safe_delete(engine, name: str) -> None:
    try:
        engine.delete_file(name)
    except OSError as e:
        logger.warning(f"Could not delete intermediate file {name}: {e}")


# ============================================================================
# Pass 1: loudness analysis
# ============================================================================

def analyze_loudness(engine, input_name: str, channel_layout: ChannelLayout) -> LoudnessMeasurement:
    """Measure integrated loudness, true peak and LRA after cleanup filters."""
    run = run_ffmpeg(engine, [
        "-hide_banner",
        "-i", input_name,
        "-af", build_loudness_analysis_filter(channel_layout),
        "-f", "null", "-",
    ])
    measurement = parse_loudness(run.diagnostics)
    logger.debug(f"{input_name}: I={measurement.input_i} TP={measurement.input_tp} "
                 f"LRA={measurement.input_lra}")
    return measurement


# ============================================================================
# Pass 2: loudness correction
# ============================================================================

def normalize_loudness(engine, input_name: str, channel_layout: ChannelLayout,
                       measurement: LoudnessMeasurement) -> str:
    """
    Apply two-pass loudnorm using the pass 1 measurements.

    Returns:
        Name of the normalized WAV in the engine's working directory
    """
    output_name = normalized_name(input_name)
    run_ffmpeg(engine, [
        "-i", input_name,
        "-af", build_loudness_correction_filter(channel_layout, measurement),
        output_name,
    ])

    if not engine.exists(output_name):
        raise PostconditionError(
            f"Loudness normalization finished but {output_name} was not created."
        )
    return output_name


# ============================================================================
# Pass 3: RMS analysis
# ============================================================================

def analyze_normalized(engine, norm_name: str) -> float:
    """
    Measure the overall RMS level (dB) of the normalized audio.

    The ametadata report is removed whether or not it parses.
    """
    report_name = rms_report_name(norm_name)
    try:
        run_ffmpeg(engine, [
            "-i", norm_name,
            "-af", build_rms_analysis_filter(report_name),
            "-f", "null", "-",
        ])

        if not engine.exists(report_name):
            raise RmsParseError(
                f"RMS analysis finished but the report {report_name} was not created."
            )
        content = engine.read_file(report_name).decode("utf-8", errors="replace")
        return parse_rms_level(content)
    finally:
        if engine.exists(report_name):
            _safe_delete(engine, report_name)


# ============================================================================
# Pass 4: mastering and encoding
# ============================================================================

def master_encode(engine, norm_name: str, rms_level: float, options: MasteringOptions,
                  output_format: str = OUTPUT_FORMAT) -> str:
    """
    Run the dynamics chain and encode the final chunk.

    The normalized intermediate is removed on every exit path.

    Returns:
        Name of the mastered chunk in the engine's working directory
    """
    output_name = mastered_name(norm_name, output_format)
    try:
        filters = build_mastering_filters(rms_level, options)
        run_ffmpeg(engine, [
            "-i", norm_name,
            "-af", ",".join(filters),
            *encoder_args(),
            output_name,
        ])

        if not engine.exists(output_name):
            raise PostconditionError(
                f"Mastering finished but {output_name} was not created."
            )
        return output_name
    finally:
        if engine.exists(norm_name):
            _safe_delete(engine, norm_name)
