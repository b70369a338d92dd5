"""Sampler - Transcode Worker.

Produces the canonical MP3 artifact for a sample.

Links: transcode, download_transcode (after the download step)
Input: temporary upload/download on the private disk
Output: public disk audio/{sample_id}.mp3

Canonical format: MP3, libmp3lame, constant 128 kbit/s, 44100 Hz,
channel count preserved, metadata stripped.

Resilience features:
- Deterministic output name: a re-run after a crash overwrites, never forks
- Atomic publish: ffmpeg writes a .tmp sibling which is renamed only after
  it has been verified playable
- Idempotent: an existing non-empty artifact is reported as success

Dependencies:
- Requires ffmpeg installed and in PATH

Error codes:
- INPUT_NOT_FOUND: temporary input does not exist
- ENCODE_FAILED: ffmpeg exited non-zero or timed out
- OUTPUT_EMPTY: ffmpeg succeeded but wrote nothing
- OUTPUT_UNPLAYABLE: output does not decode cleanly
- WORKER_ERROR: filesystem failure while publishing
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from sampler.config import (
    CANONICAL_BITRATE,
    CANONICAL_CODEC,
    CANONICAL_SAMPLE_RATE,
    FFMPEG_BINARY,
)
from sampler.storage import Storage
from sampler.utils.atomic_io import atomic_publish_file, temp_path_for
from sampler.utils.external import ToolRunner, run_tool
from sampler.utils.paths import audio_artifact_path

logger = logging.getLogger(__name__)


# --- Error Codes ---


class TranscodeErrorCode:
    """Error codes for the transcode worker."""

    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    ENCODE_FAILED = "ENCODE_FAILED"
    OUTPUT_EMPTY = "OUTPUT_EMPTY"
    OUTPUT_UNPLAYABLE = "OUTPUT_UNPLAYABLE"
    WORKER_ERROR = "WORKER_ERROR"


# --- Result Types ---


@dataclass
class TranscodeMetrics:
    """Metrics collected during transcoding."""

    input_bytes: int = 0
    output_bytes: int = 0
    encode_time_ms: int = 0


@dataclass
class TranscodeResult:
    """Result of transcode worker execution.

    artifact_path is the logical path on the public disk.
    """

    ok: bool
    error_code: str | None = None
    message: str | None = None
    stderr: str = ""
    metrics: TranscodeMetrics = field(default_factory=TranscodeMetrics)
    artifact_path: str | None = None


# --- ffmpeg Commands ---


def build_encode_command(input_path: Path, output_path: Path) -> list[str]:
    return [
        FFMPEG_BINARY,
        "-v",
        "error",
        "-y",
        "-i",
        str(input_path),
        "-vn",
        "-map_metadata",
        "-1",
        "-codec:a",
        CANONICAL_CODEC,
        "-b:a",
        CANONICAL_BITRATE,
        "-ar",
        str(CANONICAL_SAMPLE_RATE),
        # Output name ends in .tmp, so the muxer must be explicit
        "-f",
        "mp3",
        str(output_path),
    ]


def build_verify_command(path: Path) -> list[str]:
    """Full decode to the null muxer; any decode error fails the check."""
    return [FFMPEG_BINARY, "-v", "error", "-i", str(path), "-f", "null", "-"]


def _discard(path: Path) -> None:
    try:
        os.remove(path)
    except OSError:
        pass


# --- Main Transcode Logic ---


def transcode_to_canonical(
    input_path: str | Path,
    sample_id: str,
    public: Storage,
    run: ToolRunner = run_tool,
) -> TranscodeResult:
    """Transcode an input file to the canonical artifact of sample_id.

    Args:
        input_path: Absolute path of the source audio.
        sample_id: Sample whose artifact is produced.
        public: Public storage receiving the artifact.
        run: External tool runner.

    Returns:
        TranscodeResult with success/failure status and metrics.
    """
    input_path = Path(input_path)
    logical = audio_artifact_path(sample_id)
    final_path = public.path(logical)
    tmp_path = temp_path_for(final_path)
    metrics = TranscodeMetrics()

    # 1. Artifact already published by an earlier attempt
    if final_path.is_file() and final_path.stat().st_size > 0:
        logger.info("Canonical audio already exists for sample_id=%s", sample_id)
        metrics.output_bytes = final_path.stat().st_size
        return TranscodeResult(
            ok=True,
            message="Artifact already exists",
            metrics=metrics,
            artifact_path=logical,
        )

    if not input_path.is_file():
        logger.error("Transcode input not found: %s", input_path)
        return TranscodeResult(
            ok=False,
            error_code=TranscodeErrorCode.INPUT_NOT_FOUND,
            message=f"Input not found: {input_path.name}",
        )
    metrics.input_bytes = input_path.stat().st_size

    # 2. Encode into the temp sibling
    final_path.parent.mkdir(parents=True, exist_ok=True)
    _discard(tmp_path)

    start = time.monotonic()
    result = run(build_encode_command(input_path, tmp_path))
    metrics.encode_time_ms = int((time.monotonic() - start) * 1000)

    if not result.ok:
        _discard(tmp_path)
        reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
        return TranscodeResult(
            ok=False,
            error_code=TranscodeErrorCode.ENCODE_FAILED,
            message=f"Encoder {reason}",
            stderr=result.stderr_tail,
            metrics=metrics,
        )

    if not tmp_path.is_file() or tmp_path.stat().st_size == 0:
        _discard(tmp_path)
        return TranscodeResult(
            ok=False,
            error_code=TranscodeErrorCode.OUTPUT_EMPTY,
            message="Encoder produced no output",
            stderr=result.stderr_tail,
            metrics=metrics,
        )
    metrics.output_bytes = tmp_path.stat().st_size

    # 3. Output must decode cleanly before it may become the artifact
    verify = run(build_verify_command(tmp_path))
    if not verify.ok or verify.stderr.strip():
        _discard(tmp_path)
        return TranscodeResult(
            ok=False,
            error_code=TranscodeErrorCode.OUTPUT_UNPLAYABLE,
            message="Encoded output is not playable",
            stderr=verify.stderr_tail,
            metrics=metrics,
        )

    # 4. Atomic publish
    try:
        atomic_publish_file(tmp_path, final_path)
    except OSError as e:
        logger.error("Failed to publish canonical audio: %s", e)
        _discard(tmp_path)
        return TranscodeResult(
            ok=False,
            error_code=TranscodeErrorCode.WORKER_ERROR,
            message=f"Failed to publish artifact: {e}",
            metrics=metrics,
        )

    logger.info(
        "Transcode complete for sample_id=%s: %d -> %d bytes, %dms",
        sample_id,
        metrics.input_bytes,
        metrics.output_bytes,
        metrics.encode_time_ms,
    )
    return TranscodeResult(
        ok=True,
        message="Transcode completed successfully",
        metrics=metrics,
        artifact_path=logical,
    )


# --- Standalone Execution ---


if __name__ == "__main__":
    import sys

    from sampler.storage import default_public_storage

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <input_path> <sample_id>")
        sys.exit(1)

    result = transcode_to_canonical(sys.argv[1], sys.argv[2], default_public_storage())
    if result.ok:
        print(f"Success: {result.artifact_path}")
        print(f"Size: {result.metrics.output_bytes} bytes")
        sys.exit(0)
    else:
        print(f"Error: {result.error_code} - {result.message}")
        if result.stderr:
            print(result.stderr)
        sys.exit(1)
