#!/usr/bin/env python3
"""
PodMaster Pipeline - Streamlit Web UI

A web-based interface for parallel podcast mastering.

Features:
- Upload audio files (MP3, WAV, M4A, FLAC, ...)
- Toggle the optional mastering stages
- Live per-worker status and step timings
- Download the mastered file
"""

import queue
import sys
import threading
import time
from pathlib import Path

import streamlit as st

# Add project root to path
PROJECT_ROOT = Path(__file__).parent
sys.path.insert(0, str(PROJECT_ROOT))

from lib.audio import mastered_output_name
from lib.config import (
    PAGE_TITLE,
    PAGE_ICON,
    SUPPORTED_FORMATS,
    OUTPUT_MIME_TYPES,
    MAX_POOL_SIZE,
)
from lib.system import get_system_resources, calculate_pool_size
from lib.ui_components import (
    get_custom_css,
    show_header,
    show_unit_status,
    format_duration,
    format_file_size,
)
from app.services.mastering_pipeline import (
    FFmpegEngine,
    MasteringError,
    MasteringOptions,
    MasteringOrchestrator,
    PipelineResult,
    WorkerPool,
    check_ffmpeg,
)

# Page config
st.set_page_config(
    page_title=PAGE_TITLE,
    page_icon=PAGE_ICON,
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown(get_custom_css(), unsafe_allow_html=True)


@st.cache_data(show_spinner=False)
def get_engine_version() -> str:
    try:
        check_ffmpeg()
    except MasteringError as e:
        return f"unavailable ({e})"
    engine = FFmpegEngine()
    try:
        info = engine.version()
    finally:
        engine.close()
    return str(info.version) if info.version is not None else "unknown"


def run_mastering(data: bytes, file_name: str, options: MasteringOptions,
                  workers: int, events: "queue.Queue") -> None:
    """Background thread: one pool, one run. Everything is reported through ``events``."""
    start_time = time.time()
    try:
        with WorkerPool(size=workers) as pool:
            events.put(("units", pool.unit_status()))
            orchestrator = MasteringOrchestrator(pool)

            def on_update(update):
                events.put(("update", update))
                events.put(("units", pool.unit_status()))

            def on_progress(event):
                events.put(("progress", event))

            result = orchestrator.run_bytes(
                data, file_name, options, on_update=on_update, on_progress=on_progress
            )
    except (MasteringError, OSError) as e:
        result = PipelineResult.failed(e, time.time() - start_time)
    events.put(("done", result))


def main():
    # Sidebar
    with st.sidebar:
        st.title("PodMaster")
        st.markdown("Parallel Podcast Mastering")
        st.markdown("---")

        cpu_cores, memory_gb = get_system_resources()
        st.markdown("**System Info**")
        st.text(f"CPU Cores: {cpu_cores}")
        st.text(f"Memory: {memory_gb:.1f} GB")
        st.text(f"FFmpeg: {get_engine_version()}")

    show_header(f"{PAGE_ICON} Podcast Mastering",
                "Loudness normalization and dynamics, chunked across worker processes")

    uploaded_file = st.file_uploader(
        "Drop an audio file here",
        type=[ext.lstrip('.') for ext in SUPPORTED_FORMATS],
    )

    col1, col2 = st.columns(2)
    with col1:
        gate = st.checkbox("Noise gate", value=True)
        clarity = st.checkbox("Clarity (8 kHz shelf)", value=True)
    with col2:
        tonal = st.checkbox("Tonal balance EQ", value=True)
        soft_clip = st.checkbox("Soft clipper", value=True)

    workers = st.slider("Worker processes", 1, MAX_POOL_SIZE, calculate_pool_size())

    if uploaded_file is None:
        return

    if Path(uploaded_file.name).suffix.lower() not in SUPPORTED_FORMATS:
        st.error(f"Unsupported format: {Path(uploaded_file.name).suffix}")
        return

    st.text(f"{uploaded_file.name} - {format_file_size(uploaded_file.size)}")

    if not st.button("🎚️ Start Mastering", type="primary"):
        result = st.session_state.get("last_result")
        if result is not None:
            show_result(*result)
        return

    options = MasteringOptions(gate=gate, clarity=clarity, tonal=tonal, soft_clip=soft_clip)
    events: "queue.Queue" = queue.Queue()
    thread = threading.Thread(
        target=run_mastering,
        args=(uploaded_file.getvalue(), uploaded_file.name, options, workers, events),
        daemon=True,
    )
    thread.start()

    progress_bar = st.progress(0)
    status_text = st.empty()
    units_box = st.empty()
    steps_box = st.container()
    unit_messages = {}
    units = []

    result = None
    while result is None:
        try:
            kind, payload = events.get(timeout=0.2)
        except queue.Empty:
            continue

        if kind == "update":
            if payload.chunks_total:
                progress_bar.progress((payload.chunks_done or 0) / payload.chunks_total)
            if payload.command is None:
                status_text.text(f"Step {payload.step}/{payload.total_steps}: {payload.message}")
            if payload.duration is not None:
                steps_box.text(f"✓ {payload.message} ({format_duration(payload.duration)})")
        elif kind == "progress":
            unit_messages[payload.unit_id] = payload.message
            show_unit_status(units_box, units, unit_messages)
        elif kind == "units":
            units = payload
            show_unit_status(units_box, units, unit_messages)
        elif kind == "done":
            result = payload

    thread.join()
    st.session_state["last_result"] = (result, uploaded_file.name)
    show_result(result, uploaded_file.name)


def show_result(result: PipelineResult, file_name: str):
    if result.success:
        st.markdown(
            f'<div class="success-box">✅ Mastered {format_duration(result.total_duration)} of audio '
            f'in {format_duration(result.elapsed_time)}</div>',
            unsafe_allow_html=True,
        )
        st.download_button(
            "⬇️ Download mastered file",
            data=result.final_payload,
            file_name=mastered_output_name(file_name, result.output_format),
            mime=OUTPUT_MIME_TYPES.get(result.output_format, "application/octet-stream"),
        )
    else:
        st.markdown('<div class="error-box">❌ Mastering failed</div>', unsafe_allow_html=True)
        with st.expander("Error details"):
            st.code(str(result.error))


if __name__ == "__main__":
    main()
