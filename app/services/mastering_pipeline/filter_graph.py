"""
Filter-graph builders for the four mastering passes.

Pure functions that turn measurements and options into ffmpeg -af
strings. Stage order matters and is fixed here:

    cleanup:   aformat -> highpass -> afftdn -> deesser
    pass 1:    cleanup -> loudnorm (measure, print_format=json)
    pass 2:    cleanup -> loudnorm (measured_* from pass 1)
    pass 3:    astats -> ametadata (report file)
    pass 4:    de-mud EQ -> high EQ -> limiter
               [-> gate] [-> clarity] [-> tonal x3] [-> soft clip]
"""

from typing import List

from lib.config import (
    TARGET_LOUDNESS_LUFS,
    TARGET_TRUE_PEAK_DBFS,
    TARGET_LOUDNESS_RANGE_LU,
    HIGH_PASS_FREQ_HZ,
    NOISE_FLOOR_DBFS,
    DEMUD_THRESHOLD_OFFSET_DB,
    HIGH_FREQ_THRESHOLD_DB,
    LIMITER_CEILING,
    GATE_OFFSET_DB,
    OUTPUT_QUALITY,
)

from .jobs import ChannelLayout, MasteringOptions
from .log_parsers import LoudnessMeasurement

CLARITY_FILTER = "equalizer=f=8000:t=h:g=3"
TONAL_FILTERS = [
    "equalizer=f=92:width_type=h:w=50:g=1",
    "equalizer=f=185:width_type=h:w=100:g=1",
    "equalizer=f=5920:width_type=h:w=1000:g=1.5",
]
SOFT_CLIP_FILTER = "asoftclip=type=atan"


def fmt(value: float) -> str:
    """Render a number for a filter argument: integers without a trailing .0."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _loudnorm_targets() -> str:
    return (
        f"loudnorm=I={fmt(TARGET_LOUDNESS_LUFS)}"
        f":TP={fmt(TARGET_TRUE_PEAK_DBFS)}"
        f":LRA={fmt(TARGET_LOUDNESS_RANGE_LU)}"
    )


def build_cleanup_filters(channel_layout: ChannelLayout) -> str:
    layout = ChannelLayout(channel_layout).value
    return (
        f"aformat=channel_layouts={layout},"
        f"highpass=f={fmt(HIGH_PASS_FREQ_HZ)},"
        f"afftdn=nf={fmt(NOISE_FLOOR_DBFS)},"
        f"deesser"
    )


def build_loudness_analysis_filter(channel_layout: ChannelLayout) -> str:
    return f"{build_cleanup_filters(channel_layout)},{_loudnorm_targets()}:print_format=json"


def build_loudness_correction_filter(channel_layout: ChannelLayout,
                                     measurement: LoudnessMeasurement) -> str:
    return (
        f"{build_cleanup_filters(channel_layout)},{_loudnorm_targets()}"
        f":measured_I={fmt(measurement.input_i)}"
        f":measured_TP={fmt(measurement.input_tp)}"
        f":measured_LRA={fmt(measurement.input_lra)}"
        f":measured_thresh={fmt(measurement.input_thresh)}"
        f":offset={fmt(measurement.target_offset)}"
    )


def build_rms_analysis_filter(report_file: str) -> str:
    return f"astats=metadata=1,ametadata=mode=print:file={report_file}"


def gate_threshold_db(rms_level: float) -> float:
    return rms_level - GATE_OFFSET_DB


def gate_threshold_linear(rms_level: float) -> float:
    """Gate threshold as linear amplitude: 10^((RMS - 18) / 20)."""
    return 10 ** (gate_threshold_db(rms_level) / 20)


def build_mastering_filters(rms_level: float, options: MasteringOptions) -> List[str]:
    """Ordered dynamics chain for the final pass."""
    demud_threshold = rms_level + DEMUD_THRESHOLD_OFFSET_DB

    filters = [
        "adynamicequalizer=dfrequency=350:dqfactor=1.75:tfrequency=350:tqfactor=1.75:tftype=bell"
        f":threshold={fmt(demud_threshold)}"
        ":attack=20:release=50:knee=1:ratio=1:makeup=2:range=2:slew=1:mode=boost",
        "adynamicequalizer=dfrequency=7000:dqfactor=3.5:tfrequency=7000:tqfactor=3.5:tftype=bell"
        f":threshold={fmt(HIGH_FREQ_THRESHOLD_DB)}"
        ":attack=20:release=50:knee=1:ratio=1:makeup=3:range=3:slew=1:mode=boost",
        f"alimiter=limit={fmt(LIMITER_CEILING)}",
    ]

    if options.gate:
        filters.append(f"agate=threshold={fmt(gate_threshold_linear(rms_level))}")
    if options.clarity:
        filters.append(CLARITY_FILTER)
    if options.tonal:
        filters.extend(TONAL_FILTERS)
    if options.soft_clip:
        filters.append(SOFT_CLIP_FILTER)

    return filters


def encoder_args(quality: str = OUTPUT_QUALITY) -> List[str]:
    """Encoder flags for the mastered output, e.g. ['-q:a', '9']."""
    return quality.split()
