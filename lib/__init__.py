"""
PodMaster Pipeline - Library Modules

Shared helpers used by the CLI, the Streamlit app and the mastering
pipeline in app/services/mastering_pipeline.

Module Structure:
================

lib/
├── __init__.py          # Package initialization
├── config.py            # Configuration and constants
├── system.py            # System utilities (CPU, memory, pool sizing)
├── audio.py             # Input validation, output naming, metadata tags
└── ui_components.py     # Shared Streamlit UI components

Dependencies:
============
- config.py: No internal dependencies (base module)
- system.py: Depends on config.py
- audio.py: Depends on config.py
- ui_components.py: Depends on config.py, streamlit

Impact Analysis:
===============
- config.py: Changing constants affects all modules
- system.py: Affects default pool size, resource display
- audio.py: Affects upload validation, final file tags
- ui_components.py: UI changes only, isolated impact

ui_components is not imported here so the CLI and the execution units
never load streamlit.
"""

from .config import (
    PROJECT_ROOT,
    SUPPORTED_FORMATS,
    OUTPUTS_DIR,
    LOGS_DIR,
    OUTPUT_FORMAT,
    DEFAULT_CHUNK_DURATION,
)

from .system import (
    get_system_resources,
    calculate_pool_size,
)

from .audio import (
    get_audio_duration,
    validate_audio_file,
    build_metadata_tags,
    mastered_output_name,
)

__all__ = [
    # Config
    'PROJECT_ROOT',
    'SUPPORTED_FORMATS',
    'OUTPUTS_DIR',
    'LOGS_DIR',
    'OUTPUT_FORMAT',
    'DEFAULT_CHUNK_DURATION',
    # System
    'get_system_resources',
    'calculate_pool_size',
    # Audio
    'get_audio_duration',
    'validate_audio_file',
    'build_metadata_tags',
    'mastered_output_name',
]

__version__ = '1.0.0'
