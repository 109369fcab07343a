"""
Per-chunk mastering state machine.

    QUEUED -> ANALYZING_LOUDNESS -> NORMALIZING_LOUDNESS
           -> ANALYZING_MASTERING -> ENCODING -> SUCCEEDED

FAILED is reachable from any in-progress state and records the reason.
Each pass's numeric output parameterizes the next pass: the loudness
measurement feeds the correction filter, the RMS level feeds the
dynamics chain.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from lib.config import OUTPUT_FORMAT

from .jobs import ChannelLayout, MasteringOptions
from .passes import (
    analyze_loudness,
    normalize_loudness,
    analyze_normalized,
    master_encode,
    normalized_name,
)


class ChunkState(str, Enum):
    QUEUED = "queued"
    ANALYZING_LOUDNESS = "analyzing_loudness"
    NORMALIZING_LOUDNESS = "normalizing_loudness"
    ANALYZING_MASTERING = "analyzing_mastering"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = {ChunkState.SUCCEEDED, ChunkState.FAILED}

# (state, user-facing progress message)
PASS_MESSAGES = {
    ChunkState.ANALYZING_LOUDNESS: "Pass 1/4: Analyzing Loudness...",
    ChunkState.NORMALIZING_LOUDNESS: "Pass 2/4: Normalizing Loudness...",
    ChunkState.ANALYZING_MASTERING: "Pass 3/4: Analyzing for Mastering...",
    ChunkState.ENCODING: "Pass 4/4: Applying Mastering & Encoding...",
}


class ChunkPipeline:
    """
    Sequences the four pass executors for one chunk on one engine.

    Args:
        engine: Engine whose working directory holds ``input_name``
        input_name: Chunk file name, e.g. ``chunk_0003.wav``
        channel_layout: mono or stereo, from the coordinator's analysis
        options: Optional dynamics stages
        report: Callback receiving a progress message per pass
        logger: Logger for transition records (defaults to the module logger)
    """

    def __init__(
        self,
        engine,
        input_name: str,
        channel_layout: ChannelLayout,
        options: Optional[MasteringOptions] = None,
        report: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
        output_format: str = OUTPUT_FORMAT,
    ):
        self.engine = engine
        self.input_name = input_name
        self.channel_layout = ChannelLayout(channel_layout)
        self.options = options or MasteringOptions()
        self.report = report
        self.logger = logger or logging.getLogger(__name__)
        self.output_format = output_format

        self.state = ChunkState.QUEUED
        self.history: List[ChunkState] = [ChunkState.QUEUED]
        self.failure_reason: Optional[str] = None

    def _transition(self, new_state: ChunkState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"{self.input_name}: cannot leave terminal state {self.state.value}")

        self.logger.info(f"{self.input_name}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

        message = PASS_MESSAGES.get(new_state)
        if message and self.report:
            self.report(message)

    def _fail(self, error: BaseException) -> None:
        self.failure_reason = str(error)
        self.logger.error(f"{self.input_name}: failed during {self.state.value}: {error}")
        self.state = ChunkState.FAILED
        self.history.append(ChunkState.FAILED)

    def run(self) -> str:
        """
        Run all four passes.

        Returns:
            Name of the mastered chunk in the engine's working directory

        Raises:
            Whatever the failing pass raised, after moving to FAILED
        """
        try:
            self._transition(ChunkState.ANALYZING_LOUDNESS)
            measurement = analyze_loudness(self.engine, self.input_name, self.channel_layout)

            norm_name = normalized_name(self.input_name)
            try:
                self._transition(ChunkState.NORMALIZING_LOUDNESS)
                normalize_loudness(self.engine, self.input_name, self.channel_layout, measurement)

                self._transition(ChunkState.ANALYZING_MASTERING)
                rms_level = analyze_normalized(self.engine, norm_name)
            except Exception:
                # Pass 4 owns the normalized file; clean it up if we never get there
                if self.engine.exists(norm_name):
                    self.engine.delete_file(norm_name)
                raise
            self.logger.info(f"{self.input_name}: RMS level {rms_level:.2f} dB")

            self._transition(ChunkState.ENCODING)
            output_name = master_encode(
                self.engine, norm_name, rms_level, self.options, self.output_format
            )

            self._transition(ChunkState.SUCCEEDED)
            return output_name

        except Exception as e:
            if self.state not in TERMINAL_STATES:
                self._fail(e)
            raise
