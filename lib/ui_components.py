"""
UI Components Module - lib/ui_components.py

Shared Streamlit UI components and styles for the mastering page.

Impact Analysis:
===============
- get_custom_css(): Applied once at the top of web_app.py
- show_unit_status(): Live per-unit status while chunks are mastered
- format_*(): Used for step timings and download sizes

Dependencies:
============
- lib/config.py (APP_NAME, APP_VERSION)
- streamlit

Used By:
========
- web_app.py

Functions:
=========
- get_custom_css() -> str
- show_header(title: str, subtitle: str)
- unit_status_label(unit: dict) -> tuple[str, str]
- show_unit_status(placeholder, units: list, messages: dict)
- show_status_badge(status: str) -> str
- format_duration(seconds: float) -> str
- format_file_size(bytes_size: int) -> str
"""

from typing import Dict, List, Tuple

import streamlit as st
from .config import APP_NAME, APP_VERSION


def get_custom_css() -> str:
    """
    Get custom CSS styles for the application.

    Returns:
        str: CSS string to be applied via st.markdown

    Example:
        >>> st.markdown(get_custom_css(), unsafe_allow_html=True)
    """
    return """
    <style>
        .main-header {
            font-size: 2.5rem;
            font-weight: bold;
            color: #1f77b4;
            margin-bottom: 0.5rem;
        }
        .sub-header {
            font-size: 1.2rem;
            color: #666;
            margin-bottom: 2rem;
        }
        .unit-row {
            background-color: #f8f9fa;
            border-radius: 5px;
            padding: 0.4rem 0.8rem;
            margin: 0.25rem 0;
            border-left: 4px solid #1f77b4;
            font-family: monospace;
        }
        .success-box {
            background-color: #d4edda;
            border: 1px solid #c3e6cb;
            border-radius: 5px;
            padding: 1rem;
            margin: 1rem 0;
        }
        .error-box {
            background-color: #f8d7da;
            border: 1px solid #f5c6cb;
            border-radius: 5px;
            padding: 1rem;
            margin: 1rem 0;
        }

        /* Enhanced drag & drop styling */
        [data-testid="stFileUploader"] {
            border: 2px dashed #1f77b4;
            border-radius: 10px;
            padding: 20px;
            background: linear-gradient(135deg, #f8f9fa 0%, #e9ecef 100%);
        }

        /* Sidebar styling */
        .sidebar-info {
            background-color: #f0f2f6;
            padding: 1rem;
            border-radius: 5px;
            margin-bottom: 1rem;
        }
    </style>
    """


def show_header(title: str = APP_NAME, subtitle: str = ""):
    """
    Display a page header with title and optional subtitle.

    Example:
        >>> show_header("🎚️ PodMaster", "Parallel podcast mastering")
    """
    st.markdown(f'<p class="main-header">{title}</p>', unsafe_allow_html=True)
    if subtitle:
        st.markdown(f'<p class="sub-header">{subtitle}</p>', unsafe_allow_html=True)
    st.caption(f"v{APP_VERSION}")


def unit_status_label(unit: Dict) -> Tuple[str, str]:
    """
    Status word and chunk text for one row of WorkerPool.unit_status().

    Example:
        >>> unit_status_label({'ready': True, 'busy': True, 'current_job_index': 2})
        ('processing', 'chunk 3')
    """
    if not unit.get('ready'):
        return 'pending', 'starting...'
    if unit.get('busy'):
        return 'processing', f"chunk {unit['current_job_index'] + 1}"
    return 'idle', 'waiting for work'


def show_unit_status(placeholder, units: List[Dict], messages: Dict[int, str]):
    """
    Render one line per execution unit into a placeholder.

    Args:
        placeholder: st.empty() container, redrawn on every update
        units: Snapshot from WorkerPool.unit_status()
        messages: Latest progress message per unit_id
    """
    rows = []
    for unit in units:
        status, detail = unit_status_label(unit)
        message = messages.get(unit['unit_id'], '') if status == 'processing' else ''
        rows.append(
            f'<div class="unit-row">Unit {unit["unit_id"]} '
            f'{show_status_badge(status)} {detail} {message}</div>'
        )
    placeholder.markdown("\n".join(rows), unsafe_allow_html=True)


def show_status_badge(status: str) -> str:
    """
    Get HTML for a status badge.

    Example:
        >>> badge_html = show_status_badge('completed')
    """
    colors = {
        'completed': '#28a745',
        'processing': '#ffc107',
        'failed': '#dc3545',
        'pending': '#6c757d',
        'idle': '#17a2b8',
    }
    color = colors.get(status.lower(), '#6c757d')
    return f'<span style="background-color: {color}; color: white; padding: 2px 8px; border-radius: 4px; font-size: 0.8em;">{status}</span>'


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds to a human-readable string.

    Example:
        >>> format_duration(4470)
        '1h 14m'
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def format_file_size(bytes_size: int) -> str:
    """
    Format file size in bytes to human-readable string.

    Example:
        >>> format_file_size(1536000)
        '1.5 MB'
    """
    if bytes_size < 1024:
        return f"{bytes_size} B"
    elif bytes_size < 1024**2:
        return f"{bytes_size / 1024:.1f} KB"
    elif bytes_size < 1024**3:
        return f"{bytes_size / 1024**2:.1f} MB"
    else:
        return f"{bytes_size / 1024**3:.2f} GB"
