"""
Audio Utilities Module - lib/audio.py

Input validation and output naming around the mastering pipeline.

Impact Analysis:
===============
- get_audio_duration(): Used for the duration display before a run
- validate_audio_file(): Used by the CLI and web_app.py before mastering
- build_metadata_tags(): Tags written into the final concatenated file
- mastered_output_name(): Default output file name for an input

Dependencies:
============
- lib/config.py (SUPPORTED_FORMATS, OUTPUT_FORMAT, APP_NAME, METADATA_*)

Used By:
========
- app/services/mastering_pipeline/orchestrator.py
- scripts/master_podcast.py
- web_app.py

External Dependencies:
====================
- ffprobe (from ffmpeg) for duration detection

Functions:
=========
- get_audio_duration(file_path: str) -> float
- validate_audio_file(file_path: str, supported_formats: list) -> dict
- build_metadata_tags(input_name: str, today: date = None) -> list[tuple[str, str]]
- mastered_output_name(input_name: str, output_format: str) -> str
"""

import subprocess
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import (
    SUPPORTED_FORMATS,
    OUTPUT_FORMAT,
    APP_NAME,
    METADATA_GENRE,
    METADATA_ARTIST,
    METADATA_ALBUM_ARTIST,
)


def get_audio_duration(file_path: str) -> float:
    """
    Get audio file duration in seconds using ffprobe.

    Args:
        file_path: Path to audio file

    Returns:
        float: Duration in seconds, or 0.0 if detection fails

    Example:
        >>> duration = get_audio_duration("episode.mp3")
        >>> print(f"{duration / 60:.1f} minutes")
        48.2 minutes
    """
    try:
        result = subprocess.run(
            ['ffprobe', '-v', 'error', '-show_entries',
             'format=duration', '-of', 'default=noprint_wrappers=1:nokey=1',
             file_path],
            capture_output=True,
            text=True,
            timeout=30
        )
        return float(result.stdout.strip())
    except (OSError, ValueError, subprocess.SubprocessError):
        return 0.0


def validate_audio_file(file_path: str, supported_formats: list = SUPPORTED_FORMATS,
                        probe_duration: bool = True) -> Dict:
    """
    Validate an audio file for mastering.

    Args:
        file_path: Path to audio file
        supported_formats: List of supported extensions (e.g., ['.mp3', '.wav'])
        probe_duration: Ask ffprobe for the duration of valid files

    Returns:
        dict: {
            'valid': bool,
            'error': str or None,
            'duration_seconds': float,
            'format': str
        }

    Example:
        >>> result = validate_audio_file("episode.mp3")
        >>> if result['valid']:
        ...     print(f"Valid {result['format']} file")
    """
    path = Path(file_path)

    if not path.is_file():
        return {
            'valid': False,
            'error': 'File not found',
            'duration_seconds': 0,
            'format': None
        }

    file_ext = path.suffix.lower()
    if file_ext not in supported_formats:
        return {
            'valid': False,
            'error': f'Unsupported format: {file_ext}',
            'duration_seconds': 0,
            'format': file_ext
        }

    if path.stat().st_size == 0:
        return {
            'valid': False,
            'error': 'File is empty',
            'duration_seconds': 0,
            'format': file_ext
        }

    return {
        'valid': True,
        'error': None,
        'duration_seconds': get_audio_duration(str(path)) if probe_duration else 0.0,
        'format': file_ext
    }


def build_metadata_tags(input_name: str, today: Optional[date] = None) -> List[Tuple[str, str]]:
    """
    Metadata tags for the final mastered file, in the order they are written.

    Example:
        >>> build_metadata_tags("episode_12.wav", date(2024, 5, 1))[0]
        ('title', 'episode_12 (Mastered)')
    """
    today = today or date.today()
    return [
        ("title", f"{Path(input_name).stem} (Mastered)"),
        ("artist", METADATA_ARTIST),
        ("album", today.isoformat()),
        ("date", str(today.year)),
        ("comment", f"Processed in parallel with {APP_NAME}."),
        ("genre", METADATA_GENRE),
        ("album_artist", METADATA_ALBUM_ARTIST),
    ]


def mastered_output_name(input_name: str, output_format: str = OUTPUT_FORMAT) -> str:
    """'episode.wav' -> 'episode_mastered.mp3'"""
    return f"{Path(input_name).stem}_mastered.{output_format}"
