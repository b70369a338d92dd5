"""Sampler - Remote source downloader/prober (yt-dlp).

Two modes:
- probe_url: metadata only (--skip-download --dump-json), used before any
  Sample exists. Failure is a synchronous ValidationError on "url".
- download_audio: fetch the best audio stream to the private disk, used by
  the download+transcode chain link.

Dependencies:
- Requires yt-dlp installed and in PATH
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sampler.config import MAX_DURATION_SECONDS, PROBE_TIMEOUT_SECONDS, YTDLP_BINARY
from sampler.errors import ErrorCode, ExternalToolError, ValidationError
from sampler.schemas import ProbeResult
from sampler.storage import Storage
from sampler.utils.external import ToolRunner, run_tool
from sampler.utils.paths import TEMP_DIR, download_stem
from sampler.validation import MSG_NO_INFORMATION, URL_FIELD, parse_probe

logger = logging.getLogger(__name__)

# Hard cap on what the downloader may write, independent of the probe
DOWNLOAD_MAX_FILESIZE = "50M"

# Partial files yt-dlp leaves behind on interruption
_PARTIAL_SUFFIXES = (".part", ".ytdl", ".tmp")


def build_probe_command(url: str) -> list[str]:
    return [
        YTDLP_BINARY,
        "--skip-download",
        "--dump-json",
        "--no-playlist",
        "--no-warnings",
        "--",
        url,
    ]


def build_download_command(url: str, output_template: str) -> list[str]:
    return [
        YTDLP_BINARY,
        "--format",
        "bestaudio/best",
        "--no-playlist",
        "--no-part",
        "--quiet",
        "--max-filesize",
        DOWNLOAD_MAX_FILESIZE,
        "--match-filter",
        f"duration < {MAX_DURATION_SECONDS}",
        "--output",
        output_template,
        "--",
        url,
    ]


def probe_url(url: str, run: ToolRunner = run_tool) -> ProbeResult:
    """Fetch metadata for a remote URL without downloading media.

    Raises:
        ValidationError: If the tool fails, times out, or prints anything
            other than a JSON object.
    """
    logger.info("Probing %s", url)
    result = run(build_probe_command(url), timeout=PROBE_TIMEOUT_SECONDS)
    if not result.ok:
        logger.warning("Probe failed for %s (exit %d): %s", url, result.exit_code, result.stderr_tail)
        raise ValidationError.for_field(URL_FIELD, MSG_NO_INFORMATION)

    # --dump-json prints one object per line; --no-playlist keeps it to one
    stdout = result.stdout.strip() if isinstance(result.stdout, str) else ""
    first_line = stdout.splitlines()[0] if stdout else ""
    try:
        raw = json.loads(first_line)
    except json.JSONDecodeError as e:
        logger.warning("Probe for %s returned invalid JSON: %s", url, e)
        raise ValidationError.for_field(URL_FIELD, MSG_NO_INFORMATION) from e

    return parse_probe(raw)


def _find_download(local: Storage, sample_id: str) -> str | None:
    """Locate the file the downloader wrote for sample_id (extension varies)."""
    stem = Path(download_stem(sample_id)).name
    directory = local.path(TEMP_DIR)
    if not directory.is_dir():
        return None
    candidates = [
        p
        for p in directory.glob(f"{stem}.*")
        if p.is_file() and p.suffix not in _PARTIAL_SUFFIXES and p.stat().st_size > 0
    ]
    if not candidates:
        return None
    newest = max(candidates, key=lambda p: p.stat().st_mtime)
    return f"{TEMP_DIR}/{newest.name}"


def download_audio(
    url: str,
    sample_id: str,
    local: Storage,
    run: ToolRunner = run_tool,
) -> str:
    """Download the audio of a remote URL to the private disk.

    Returns:
        Logical path of the downloaded file on the local storage.

    Raises:
        ExternalToolError: DOWNLOAD_FAILED if the tool fails or writes nothing.
    """
    local.ensure_directory(TEMP_DIR)
    output_template = str(local.path(download_stem(sample_id))) + ".%(ext)s"

    logger.info("Downloading %s for sample %s", url, sample_id)
    result = run(build_download_command(url, output_template))
    if not result.ok:
        raise ExternalToolError(
            f"download failed for {url} (exit {result.exit_code})",
            stderr=result.stderr_tail,
            error_code=ErrorCode.DOWNLOAD_FAILED,
        )

    logical = _find_download(local, sample_id)
    if logical is None:
        # --match-filter / --max-filesize skip silently with exit 0
        raise ExternalToolError(
            f"downloader produced no file for {url}",
            stderr=result.stderr_tail,
            error_code=ErrorCode.DOWNLOAD_FAILED,
        )

    logger.info("Downloaded %s to %s", url, logical)
    return logical
