"""Sampler - Thumbnail fetch and resize.

Best-effort: any failure is logged and reported as None so the caller can
leave thumbnail_path unset. The image is fitted to THUMBNAIL_SIZE (aspect
preserved, centre-cropped) by ffmpeg and stored as JPEG on the public disk.
"""

from __future__ import annotations

import http.client
import logging
import os
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path

from sampler.config import (
    FFMPEG_BINARY,
    THUMBNAIL_FETCH_TIMEOUT_SECONDS,
    THUMBNAIL_MAX_BYTES,
    THUMBNAIL_SIZE,
)
from sampler.storage import Storage
from sampler.utils.atomic_io import atomic_publish_file, temp_path_for
from sampler.utils.external import ToolRunner, run_tool
from sampler.utils.paths import TEMP_DIR, thumbnail_path

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http://", "https://")

# ffmpeg mjpeg quality scale, 2 (best) .. 31
JPEG_QSCALE = 3

# (url) -> image bytes
ThumbnailFetcher = Callable[[str], bytes]


class ThumbnailError(Exception):
    """Thumbnail could not be fetched or converted."""


def fetch_image_bytes(url: str) -> bytes:
    """Download an image, refusing non-HTTP schemes and oversized bodies.

    Raises:
        ThumbnailError: On any network, URL, scheme or size problem.
    """
    if not url.lower().startswith(ALLOWED_SCHEMES):
        raise ThumbnailError(f"unsupported thumbnail URL scheme: {url}")
    try:
        with urllib.request.urlopen(url, timeout=THUMBNAIL_FETCH_TIMEOUT_SECONDS) as response:
            data = response.read(THUMBNAIL_MAX_BYTES + 1)
    except (urllib.error.URLError, http.client.HTTPException, ValueError, OSError) as e:
        raise ThumbnailError(f"thumbnail fetch failed: {e}") from e
    if len(data) > THUMBNAIL_MAX_BYTES:
        raise ThumbnailError(f"thumbnail larger than {THUMBNAIL_MAX_BYTES} bytes")
    if not data:
        raise ThumbnailError("thumbnail is empty")
    return data


def build_fit_command(
    input_path: Path, output_path: Path, size: tuple[int, int] = THUMBNAIL_SIZE
) -> list[str]:
    """Scale to cover size, then centre-crop to exactly size."""
    width, height = size
    video_filter = (
        f"scale={width}:{height}:force_original_aspect_ratio=increase,"
        f"crop={width}:{height}"
    )
    return [
        FFMPEG_BINARY,
        "-v",
        "error",
        "-y",
        "-i",
        str(input_path),
        "-vf",
        video_filter,
        "-frames:v",
        "1",
        "-codec:v",
        "mjpeg",
        "-q:v",
        str(JPEG_QSCALE),
        # Output name ends in .tmp, so the muxer must be explicit
        "-f",
        "image2",
        str(output_path),
    ]


def _discard(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


def fit_image(
    input_path: Path,
    output_path: Path,
    run: ToolRunner = run_tool,
    size: tuple[int, int] = THUMBNAIL_SIZE,
) -> None:
    """Convert an image file to a size-fitted JPEG at output_path (atomic).

    Raises:
        ThumbnailError: If ffmpeg fails or writes nothing.
    """
    tmp_path = temp_path_for(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    _discard(tmp_path)

    result = run(build_fit_command(input_path, tmp_path, size))
    if not result.ok or not tmp_path.is_file() or tmp_path.stat().st_size == 0:
        _discard(tmp_path)
        raise ThumbnailError(f"image conversion failed: {result.stderr_tail.strip()}")
    atomic_publish_file(tmp_path, output_path)


def store_thumbnail(
    url: str,
    sample_id: str,
    local: Storage,
    public: Storage,
    fetch: ThumbnailFetcher = fetch_image_bytes,
    run: ToolRunner = run_tool,
) -> str | None:
    """Fetch, fit and store a thumbnail.

    The fetched bytes are staged on the private disk and removed afterwards.

    Returns:
        Logical path on the public disk, or None on any failure.
    """
    staged = f"{TEMP_DIR}/{sample_id}_thumbnail_source"
    logical = thumbnail_path(sample_id, int(time.time()))
    try:
        source = local.put(fetch(url), staged)
        fit_image(source, public.path(logical), run)
    except ThumbnailError as e:
        logger.warning("Thumbnail skipped for sample %s: %s", sample_id, e)
        return None
    except Exception:
        logger.exception("Thumbnail skipped for sample %s", sample_id)
        return None
    finally:
        local.delete(staged)

    logger.info("Stored thumbnail for sample %s at %s", sample_id, logical)
    return logical
