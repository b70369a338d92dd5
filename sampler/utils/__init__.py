"""Sampler - Utility modules."""

from sampler.utils.atomic_io import (
    atomic_publish_file,
    atomic_stream_to_file,
    atomic_write_bytes,
    atomic_write_text,
)
from sampler.utils.external import ToolResult, run_tool
from sampler.utils.paths import (
    audio_artifact_path,
    download_stem,
    temp_upload_path,
    thumbnail_path,
    waveform_artifact_path,
)

__all__ = [
    # atomic_io
    "atomic_write_bytes",
    "atomic_write_text",
    "atomic_stream_to_file",
    "atomic_publish_file",
    # external
    "ToolResult",
    "run_tool",
    # paths
    "temp_upload_path",
    "download_stem",
    "audio_artifact_path",
    "waveform_artifact_path",
    "thumbnail_path",
]
