"""Sampler - Canonical logical paths.

Returns logical (storage-relative) paths as POSIX strings. Does NOT create
directories; resolving to an absolute path is the Storage backend's job.

Artifact names are deterministic from the sample id so that re-running a
link after a crash overwrites the same artifact instead of creating a new one.
Temporary inputs and thumbnails also carry a timestamp.
"""

from pathlib import PurePosixPath

from sampler.config import CANONICAL_EXTENSION

TEMP_DIR = "temp"
AUDIO_DIR = "audio"
WAVEFORM_DIR = "waveforms"
IMAGES_DIR = "images"


def extension_of(filename: str) -> str | None:
    """Lowercase extension of a filename without the dot, or None."""
    ext = PurePosixPath(filename).suffix.lower().lstrip(".")
    return ext or None


def temp_upload_path(sample_id: str, ext: str, timestamp: int) -> str:
    """Returns: temp/{sample_id}_audio_{timestamp}.{ext}"""
    ext = ext.lstrip(".")
    return f"{TEMP_DIR}/{sample_id}_audio_{timestamp}.{ext}"


def download_stem(sample_id: str) -> str:
    """Returns: temp/{sample_id}_download (the downloader appends the extension)"""
    return f"{TEMP_DIR}/{sample_id}_download"


def audio_artifact_path(sample_id: str) -> str:
    """Returns: audio/{sample_id}.mp3"""
    return f"{AUDIO_DIR}/{sample_id}.{CANONICAL_EXTENSION}"


def waveform_artifact_path(sample_id: str) -> str:
    """Returns: waveforms/{sample_id}.waveform.json"""
    return f"{WAVEFORM_DIR}/{sample_id}.waveform.json"


def thumbnail_path(sample_id: str, timestamp: int) -> str:
    """Returns: images/{sample_id}_thumbnail_{timestamp}.jpg"""
    return f"{IMAGES_DIR}/{sample_id}_thumbnail_{timestamp}.jpg"
