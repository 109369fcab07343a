#!/usr/bin/env python3
"""
PodMaster - Parallel Podcast Mastering

Splits each input into chunks, masters every chunk through a four-pass
loudness/dynamics chain on a pool of worker processes, and joins the
chunks back together in order.

Usage:
    # Single file
    python scripts/master_podcast.py episode.wav episode_mastered.mp3

    # Batch mode (multiple files, one shared worker pool)
    python scripts/master_podcast.py --batch ep1.wav ep2.wav ep3.wav --output-dir ./outputs

    # With options
    python scripts/master_podcast.py episode.wav out.mp3 \
        --workers 4 \
        --chunk-duration 300 \
        --no-gate

Monitor Progress:
    tail -f logs/units/unit_*.log
"""

import sys
import logging
import argparse
from pathlib import Path
from datetime import datetime

from tqdm import tqdm

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from lib.audio import validate_audio_file, mastered_output_name
from lib.config import (
    DEFAULT_CHUNK_DURATION,
    DEFAULT_POOL_SIZE,
    DEFAULT_JOB_TIMEOUT,
    DEFAULT_CRASH_POLICY,
    OUTPUT_FORMAT,
    LOGS_DIR,
)
from lib.system import calculate_pool_size, get_system_resources
from app.services.mastering_pipeline import (
    CrashPolicy,
    FFmpegEngine,
    MasteringError,
    MasteringOptions,
    MasteringOrchestrator,
    WorkerPool,
    check_ffmpeg,
)


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )


class ProgressDisplay:
    """tqdm bar counting mastered chunks, with the latest unit message as postfix."""

    def __init__(self, label: str):
        self.label = label
        self.bar = None

    def on_update(self, update):
        if update.chunks_total and self.bar is None:
            self.bar = tqdm(total=update.chunks_total, desc=self.label, unit="chunk")
        if self.bar is not None and update.chunks_done is not None:
            self.bar.n = update.chunks_done
            self.bar.refresh()

    def on_progress(self, event):
        if self.bar is not None:
            self.bar.set_postfix_str(f"unit {event.unit_id} chunk {event.chunk_index + 1}: {event.message}")

    def close(self):
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def show_engine_info(logger) -> int:
    try:
        check_ffmpeg()
    except MasteringError as e:
        logger.error(str(e))
        return 1

    engine = FFmpegEngine()
    try:
        info = engine.version()
    finally:
        engine.close()

    cores, memory_gb = get_system_resources()
    logger.info("=" * 70)
    logger.info("🔧 ENGINE INFO")
    logger.info("=" * 70)
    logger.info(f"FFmpeg version: {info.version if info.version is not None else 'unknown'}")
    logger.info(f"Compiler: {info.compiler or 'unknown'}")
    logger.info(f"System: {cores} cores, {memory_gb:.1f} GB RAM")
    logger.info(f"Default units: {calculate_pool_size()}")
    logger.info("=" * 70)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description='PodMaster - Parallel Podcast Mastering',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single file
  python scripts/master_podcast.py episode.wav episode_mastered.mp3

  # Batch mode
  python scripts/master_podcast.py --batch ep1.wav ep2.wav --output-dir ./outputs

  # Custom configuration
  python scripts/master_podcast.py episode.wav out.mp3 \\
    --workers 4 \\
    --chunk-duration 120 \\
    --job-timeout 900 \\
    --crash-policy terminate

  # Check the installed engine
  python scripts/master_podcast.py --engine-info

Monitor Progress:
  tail -f logs/units/unit_*.log
        """
    )

    # Mode selection
    parser.add_argument(
        'input_file',
        nargs='?',
        help='Input audio file (single file mode)'
    )
    parser.add_argument(
        'output_file',
        nargs='?',
        help='Output file (single file mode, default: <input>_mastered.mp3)'
    )
    parser.add_argument(
        '--batch',
        nargs='+',
        help='Batch mode: list of input files'
    )
    parser.add_argument(
        '--output-dir',
        help='Output directory for batch mode'
    )

    # Pool settings
    parser.add_argument(
        '--workers',
        type=int,
        default=DEFAULT_POOL_SIZE,
        help='Number of worker processes (default: auto from CPU/RAM)'
    )
    parser.add_argument(
        '--chunk-duration',
        type=int,
        default=DEFAULT_CHUNK_DURATION,
        help=f'Chunk duration in seconds (default: {DEFAULT_CHUNK_DURATION})'
    )
    parser.add_argument(
        '--job-timeout',
        type=float,
        default=DEFAULT_JOB_TIMEOUT,
        help='Seconds a single chunk may take before its worker is killed (default: no limit)'
    )
    parser.add_argument(
        '--crash-policy',
        default=DEFAULT_CRASH_POLICY,
        choices=[p.value for p in CrashPolicy],
        help=f'What a crashed worker does to the pool (default: {DEFAULT_CRASH_POLICY})'
    )

    # Mastering options
    parser.add_argument('--no-gate', action='store_true', help='Disable the noise gate')
    parser.add_argument('--no-clarity', action='store_true', help='Disable the 8 kHz clarity shelf')
    parser.add_argument('--no-tonal', action='store_true', help='Disable the tonal balance EQ')
    parser.add_argument('--no-soft-clip', action='store_true', help='Disable the soft clipper')

    # Other options
    parser.add_argument(
        '--engine-info',
        action='store_true',
        help='Print the FFmpeg version and system resources, then exit'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose logging'
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    if args.engine_info:
        return show_engine_info(logger)

    # Validate arguments
    if args.batch:
        if not args.output_dir:
            logger.error("Batch mode requires --output-dir")
            return 1
        output_dir = Path(args.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        file_pairs = [
            (Path(f), output_dir / mastered_output_name(Path(f).name, OUTPUT_FORMAT))
            for f in args.batch
        ]
    elif args.input_file:
        input_path = Path(args.input_file)
        if args.output_file:
            output_path = Path(args.output_file)
        else:
            output_path = input_path.with_name(mastered_output_name(input_path.name, OUTPUT_FORMAT))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        file_pairs = [(input_path, output_path)]
    else:
        parser.print_help()
        return 1

    for input_path, _ in file_pairs:
        validation = validate_audio_file(str(input_path), probe_duration=False)
        if not validation['valid']:
            logger.error(f"{input_path}: {validation['error']}")
            return 1

    if args.chunk_duration <= 0:
        logger.error("--chunk-duration must be positive")
        return 1

    options = MasteringOptions(
        gate=not args.no_gate,
        clarity=not args.no_clarity,
        tonal=not args.no_tonal,
        soft_clip=not args.no_soft_clip,
    )
    pool_size = calculate_pool_size(args.workers)

    # Print configuration
    logger.info("=" * 70)
    logger.info("🎚️  PODMASTER PARALLEL MASTERING")
    logger.info("=" * 70)
    logger.info(f"Mode: {'Batch' if args.batch else 'Single'} ({len(file_pairs)} files)")
    logger.info(f"Workers: {pool_size} processes ({args.crash_policy} on crash)")
    logger.info(f"Chunking: {args.chunk_duration}s")
    logger.info(f"Stages: gate={options.gate} clarity={options.clarity} "
                f"tonal={options.tonal} soft_clip={options.soft_clip}")
    logger.info("=" * 70)
    logger.info("")
    logger.info("📋 Monitor Progress:")
    logger.info(f"  tail -f {LOGS_DIR}/unit_*.log")
    logger.info("")

    start_time = datetime.now()
    results = []

    try:
        check_ffmpeg()
        with WorkerPool(
            size=pool_size,
            crash_policy=CrashPolicy(args.crash_policy),
            job_timeout=args.job_timeout,
        ) as pool:
            orchestrator = MasteringOrchestrator(pool, chunk_duration=args.chunk_duration)

            for index, (input_path, output_path) in enumerate(file_pairs, 1):
                display = ProgressDisplay(f"[{index}/{len(file_pairs)}] {input_path.name}")
                try:
                    result = orchestrator.run(
                        input_path,
                        options=options,
                        on_update=display.on_update,
                        on_progress=display.on_progress,
                    )
                finally:
                    display.close()

                if result.success:
                    output_path.write_bytes(result.final_payload)
                results.append((input_path, output_path, result))

    except MasteringError as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    # Summary
    total_time = (datetime.now() - start_time).total_seconds()

    logger.info("")
    logger.info("=" * 70)
    logger.info("✨ MASTERING COMPLETE!")
    logger.info("=" * 70)

    successful = sum(1 for _, _, r in results if r.success)
    logger.info(f"Total time: {total_time/60:.1f} minutes")
    logger.info(f"Files processed: {successful}/{len(file_pairs)}")
    logger.info("")

    for input_path, output_path, result in results:
        if result.success:
            logger.info(f"  ✓ {output_path.name} ({result.total_duration:.1f}s audio in {result.elapsed_time:.1f}s)")
        else:
            logger.info(f"  ✗ {input_path.name}: {result.error}")

    logger.info("=" * 70)

    return 0 if successful == len(file_pairs) else 1


if __name__ == "__main__":
    sys.exit(main())
