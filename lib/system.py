"""
System Utilities Module - lib/system.py

Functions for system resource detection and execution-unit sizing.

Impact Analysis:
===============
- get_system_resources(): Used by web_app.py sidebar display
- calculate_pool_size(): Used by the CLI and web_app.py when no unit count is given

Dependencies:
============
- lib/config.py (CPU_USAGE_RATIO, MEMORY_USAGE_RATIO, MEMORY_PER_UNIT_GB, MAX_POOL_SIZE)

Used By:
========
- scripts/master_podcast.py
- web_app.py

Functions:
=========
- get_system_resources() -> tuple[int, float]
- calculate_pool_size(requested: int = 0) -> int
"""

import logging
import os
import platform
import subprocess
from typing import Tuple

from .config import CPU_USAGE_RATIO, MEMORY_USAGE_RATIO, MEMORY_PER_UNIT_GB, MAX_POOL_SIZE

logger = logging.getLogger(__name__)


def get_system_resources() -> Tuple[int, float]:
    """
    Get system CPU cores and memory information.

    Returns:
        Tuple[int, float]: (cpu_cores, memory_gb)

    Platform Support:
        - macOS: Uses sysctl commands
        - Linux: Uses /proc/meminfo and os.cpu_count()
        - Other: os.cpu_count() with an assumed 8 GB

    Example:
        >>> cores, memory = get_system_resources()
        >>> print(f"{cores} cores, {memory:.1f} GB RAM")
        8 cores, 16.0 GB RAM
    """
    system = platform.system()
    cpu_cores = os.cpu_count() or 2
    memory_gb = 8.0

    try:
        if system == "Darwin":
            mem_result = subprocess.run(
                ['sysctl', '-n', 'hw.memsize'],
                capture_output=True, text=True
            )
            memory_gb = int(mem_result.stdout.strip()) / (1024**3)

        elif system == "Linux":
            with open('/proc/meminfo') as f:
                for line in f:
                    if line.startswith('MemTotal:'):
                        memory_gb = int(line.split()[1]) / (1024**2)
                        break

    except (OSError, ValueError) as e:
        logger.warning(f"Could not read system memory, assuming {memory_gb:.0f} GB: {e}")

    return cpu_cores, memory_gb


def calculate_pool_size(requested: int = 0) -> int:
    """
    Number of execution units to start.

    An explicit positive ``requested`` value wins. Otherwise the size is
    the smaller of the usable cores and the units that fit in usable
    memory, clamped to [1, MAX_POOL_SIZE].

    Example:
        >>> calculate_pool_size(3)
        3
    """
    if requested and requested > 0:
        return requested

    cpu_cores, memory_gb = get_system_resources()
    usable_cores = int(cpu_cores * CPU_USAGE_RATIO)
    units_by_memory = int((memory_gb * MEMORY_USAGE_RATIO) / MEMORY_PER_UNIT_GB)

    return max(1, min(MAX_POOL_SIZE, usable_cores, units_by_memory))
