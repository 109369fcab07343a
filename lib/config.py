"""
Configuration Module - lib/config.py

Central configuration for the PodMaster mastering pipeline.
All constants, paths, and default settings are defined here.

Impact Analysis:
===============
- PROJECT_ROOT: Used by all modules for path resolution
- SUPPORTED_FORMATS: Used by audio.py and web_app.py for upload validation
- OUTPUTS_DIR, LOGS_DIR: Used by the CLI, web_app.py and the worker units
- TARGET_* / HIGH_PASS_FREQ_HZ / NOISE_FLOOR_DBFS: Used by filter_graph.py
- DEFAULT_CHUNK_DURATION: Used by orchestrator.py (segment length)
- DEFAULT_POOL_SIZE, DEFAULT_JOB_TIMEOUT, DEFAULT_CRASH_POLICY: Used by worker_pool.py

Dependencies:
============
- None (base module)

Used By:
========
- lib/system.py
- lib/audio.py
- lib/ui_components.py
- app/services/mastering_pipeline/*.py
- scripts/master_podcast.py
- web_app.py

Configuration Override:
=====================
Environment variables can override defaults:
- PODMASTER_OUTPUTS_DIR: Override outputs directory
- PODMASTER_LOGS_DIR: Override per-unit log directory
- PODMASTER_CHUNK_DURATION: Override chunk duration (seconds)
- PODMASTER_POOL_SIZE: Override number of execution units (0 = auto)
- PODMASTER_JOB_TIMEOUT: Override per-chunk timeout (seconds, 0 = none)
- PODMASTER_INIT_TIMEOUT: Override unit startup timeout (seconds)
- PODMASTER_CRASH_POLICY: 'replace' or 'terminate'
- PODMASTER_FFMPEG: Path to the ffmpeg binary
- PODMASTER_OUTPUT_FORMAT / PODMASTER_OUTPUT_QUALITY: Encoder settings
"""

import os
from pathlib import Path

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root is determined dynamically from this file's location
PROJECT_ROOT = Path(__file__).parent.parent

DATA_DIR = PROJECT_ROOT / "data"

OUTPUTS_DIR = Path(os.environ.get(
    'PODMASTER_OUTPUTS_DIR',
    str(DATA_DIR / "outputs")
))

LOGS_DIR = Path(os.environ.get(
    'PODMASTER_LOGS_DIR',
    str(PROJECT_ROOT / "logs" / "units")
))

# =============================================================================
# FILE FORMATS
# =============================================================================

# Input containers accepted for mastering (audio stream is extracted)
SUPPORTED_FORMATS = ['.mp3', '.wav', '.m4a', '.flac', '.ogg', '.webm', '.aac', '.mp4']

# Encoder settings for the mastered chunks and the final file
OUTPUT_FORMAT = os.environ.get('PODMASTER_OUTPUT_FORMAT', 'mp3')

# '5' = High quality, '7' = Medium, '9' = Low quality (smaller file)
OUTPUT_QUALITY = os.environ.get('PODMASTER_OUTPUT_QUALITY', '-q:a 9')

OUTPUT_MIME_TYPES = {
    'mp3': 'audio/mpeg',
    'm4a': 'audio/mp4',
    'ogg': 'audio/ogg',
    'flac': 'audio/flac',
    'wav': 'audio/wav',
}

# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

FFMPEG_BINARY = os.environ.get('PODMASTER_FFMPEG', 'ffmpeg')

# Upper bound for a single engine invocation (seconds)
ENGINE_TIMEOUT = int(os.environ.get('PODMASTER_ENGINE_TIMEOUT', '3600'))

# Lines of engine diagnostics kept per engine for error reports
LOG_STORE_MAX_LINES = 1000

# =============================================================================
# PIPELINE DEFAULTS
# =============================================================================

# Length of each chunk in seconds (segment_time of the split step)
DEFAULT_CHUNK_DURATION = int(os.environ.get(
    'PODMASTER_CHUNK_DURATION', '300'
))

# =============================================================================
# MASTERING PARAMETERS
# =============================================================================

# 1. Loudness normalization (EBU R 128)
TARGET_LOUDNESS_LUFS = -14
TARGET_TRUE_PEAK_DBFS = -1.0
TARGET_LOUDNESS_RANGE_LU = 11

# 2. Core cleanup filters
HIGH_PASS_FREQ_HZ = 80
NOISE_FLOOR_DBFS = -25

# 3. Dynamics chain
DEMUD_THRESHOLD_OFFSET_DB = 3
HIGH_FREQ_THRESHOLD_DB = 22
LIMITER_CEILING = 0.9
GATE_OFFSET_DB = 18

# =============================================================================
# WORKER CONFIGURATION
# =============================================================================

# 0 means "derive from system resources" (see lib/system.py)
DEFAULT_POOL_SIZE = int(os.environ.get('PODMASTER_POOL_SIZE', '0'))

# Per-chunk timeout in seconds; 0 disables it
DEFAULT_JOB_TIMEOUT = float(os.environ.get('PODMASTER_JOB_TIMEOUT', '0'))

# How long every unit may take to report ready
DEFAULT_INIT_TIMEOUT = float(os.environ.get('PODMASTER_INIT_TIMEOUT', '60'))

# 'replace' keeps serving the queue after a crash, 'terminate' stops the pool
DEFAULT_CRASH_POLICY = os.environ.get('PODMASTER_CRASH_POLICY', 'replace')

# Resource allocation ratios
CPU_USAGE_RATIO = 0.8  # Use 80% of available CPU cores
MEMORY_USAGE_RATIO = 0.8  # Use 80% of available memory
MEMORY_PER_UNIT_GB = 0.5  # ffmpeg + decoded chunk buffers
MAX_POOL_SIZE = 8

# =============================================================================
# METADATA / UI CONFIGURATION
# =============================================================================

APP_VERSION = "1.0.0"
APP_NAME = "PodMaster Pipeline"

PAGE_TITLE = "PodMaster - Podcast Mastering"
PAGE_ICON = "🎚️"

METADATA_GENRE = "Podcast"
METADATA_ARTIST = APP_NAME
METADATA_ALBUM_ARTIST = APP_NAME

# =============================================================================
# ENSURE DIRECTORIES EXIST
# =============================================================================

def ensure_directories():
    """Create all necessary directories if they don't exist."""
    for directory in [OUTPUTS_DIR, LOGS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)

# Auto-create directories on import
ensure_directories()
