"""Sampler - Configuration constants.

Module-level configuration. No external config libraries.
All paths are relative to the repository root by default.
"""

import os
from pathlib import Path

# Repository root (parent of sampler/)
REPO_ROOT = Path(__file__).parent.parent.resolve()


def _get_positive_int(name: str, default: int) -> int:
    """Read a positive integer from the environment.

    Args:
        name: Environment variable name.
        default: Value used when the variable is unset or invalid.

    Returns:
        The parsed value, or default.
    """
    env_val = os.environ.get(name)
    if env_val:
        try:
            value = int(env_val)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


# Data directories
DATA_DIR = Path(os.environ.get("SAMPLER_DATA_DIR", REPO_ROOT / "data"))
# Private disk: temporary uploads and downloads
LOCAL_DIR = DATA_DIR / "local"
# Public disk: servable artifacts (audio, waveforms, images)
PUBLIC_DIR = DATA_DIR / "public"

# Database path
DB_PATH = DATA_DIR / "sampler.db"

# Queue directory and Huey database path
QUEUE_DIR = DATA_DIR / "queue"
HUEY_DB_PATH = QUEUE_DIR / "huey.db"

# --- Remote source trust ---

# Extractors accepted even when the probe declares no duration
TRUSTED_EXTRACTORS = ("youtube", "soundcloud")
MIN_DURATION_SECONDS = 1
# Exclusive upper bound: exactly 5 minutes is rejected
MAX_DURATION_SECONDS = 5 * 60

# --- Upload allow-list ---

UPLOAD_MAX_BYTES = 10 * 1024 * 1024
ALLOWED_UPLOAD_MIME_TYPES = (
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/ogg",
)
ALLOWED_UPLOAD_EXTENSIONS = ("mp3", "wav", "ogg")

# --- Canonical artifact (constant bitrate MP3, channel count preserved) ---

CANONICAL_CODEC = "libmp3lame"
CANONICAL_BITRATE = "128k"
CANONICAL_SAMPLE_RATE = 44100
CANONICAL_EXTENSION = "mp3"

# --- Waveform ---

WAVEFORM_POINTS = 200
WAVEFORM_DECODE_SAMPLE_RATE = 8000

# --- Thumbnails ---

THUMBNAIL_SIZE = (300, 300)
THUMBNAIL_FETCH_TIMEOUT_SECONDS = 15
THUMBNAIL_MAX_BYTES = 5 * 1024 * 1024

# --- External tools ---

YTDLP_BINARY = "yt-dlp"
FFMPEG_BINARY = "ffmpeg"
ALLOWED_BINARIES = (YTDLP_BINARY, FFMPEG_BINARY)

# Bounded execution per invocation (override with SAMPLER_TOOL_TIMEOUT_SEC)
TOOL_TIMEOUT_SECONDS = _get_positive_int("SAMPLER_TOOL_TIMEOUT_SEC", 300)
PROBE_TIMEOUT_SECONDS = 60

# --- Chain scheduler ---

WORKER_POOL_SIZE = _get_positive_int("SAMPLER_WORKERS", 4)
MAX_ACTIVE_CHAINS = _get_positive_int("SAMPLER_MAX_ACTIVE_CHAINS", 256)

# Most external tool invocations one link makes (download, encode, verify)
MAX_TOOL_CALLS_PER_LINK = 3

# Links running longer than this are considered interrupted and re-dispatched.
# Never below the worst case of one link, so a live link is not reclaimed.
CHAIN_LINK_TTL_SECONDS = max(
    _get_positive_int("SAMPLER_LINK_TTL_SEC", 1200),
    MAX_TOOL_CALLS_PER_LINK * TOOL_TIMEOUT_SECONDS + 60,
)

# "huey" (SqliteHuey consumer) or "threads" (in-process pool)
PIPELINE_BACKEND = os.environ.get("SAMPLER_BACKEND", "huey")
