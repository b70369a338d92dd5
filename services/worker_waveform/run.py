"""Sampler - Waveform Worker.

Computes a fixed-length peak envelope of the canonical audio artifact.

Link: generate_waveform
Input: public disk audio/{sample_id}.mp3
Output: public disk waveforms/{sample_id}.waveform.json

Envelope:
- Decode to mono 16-bit PCM at WAVEFORM_DECODE_SAMPLE_RATE
- Split into WAVEFORM_POINTS equal buckets across the duration
- Peak of |sample| per bucket, normalized to [0, 1] full scale

Artifact:
{"version": 1, "sample_id": ..., "points": N, "sample_rate": ...,
 "duration_sec": ..., "peaks": [N floats]}

Error codes:
- INPUT_NOT_FOUND: canonical audio does not exist
- DECODE_FAILED: ffmpeg exited non-zero or timed out
- AUDIO_EMPTY: decoding produced no samples
- WORKER_ERROR: filesystem failure while writing
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from sampler.config import FFMPEG_BINARY, WAVEFORM_DECODE_SAMPLE_RATE, WAVEFORM_POINTS
from sampler.storage import Storage
from sampler.utils.atomic_io import atomic_write_text
from sampler.utils.external import ToolRunner, run_tool
from sampler.utils.paths import waveform_artifact_path

logger = logging.getLogger(__name__)

WAVEFORM_VERSION = 1

# int16 full scale
FULL_SCALE = 32768.0

# Peaks are rounded to keep the artifact small
PEAK_DECIMALS = 4


class WaveformErrorCode:
    """Error codes for the waveform worker."""

    INPUT_NOT_FOUND = "INPUT_NOT_FOUND"
    DECODE_FAILED = "DECODE_FAILED"
    AUDIO_EMPTY = "AUDIO_EMPTY"
    WORKER_ERROR = "WORKER_ERROR"


@dataclass
class WaveformMetrics:
    duration_sec: float = 0.0
    sample_count: int = 0
    compute_time_ms: int = 0


@dataclass
class WaveformResult:
    """Result of waveform worker execution."""

    ok: bool
    error_code: str | None = None
    message: str | None = None
    stderr: str = ""
    metrics: WaveformMetrics = field(default_factory=WaveformMetrics)
    artifact_path: str | None = None


def build_decode_command(audio_path: Path) -> list[str]:
    return [
        FFMPEG_BINARY,
        "-v",
        "error",
        "-i",
        str(audio_path),
        "-ac",
        "1",
        "-ar",
        str(WAVEFORM_DECODE_SAMPLE_RATE),
        "-f",
        "s16le",
        "-",
    ]


def compute_peaks(samples: np.ndarray, points: int = WAVEFORM_POINTS) -> list[float]:
    """Peak absolute amplitude per bucket, normalized to [0, 1].

    Always returns exactly `points` values; buckets with no samples
    (audio shorter than `points` samples) are 0.0.
    """
    if points <= 0:
        raise ValueError("points must be positive")

    magnitudes = np.abs(samples.astype(np.float64)) / FULL_SCALE
    peaks = np.zeros(points, dtype=np.float64)
    for index, bucket in enumerate(np.array_split(magnitudes, points)):
        if bucket.size:
            peaks[index] = bucket.max()

    peaks = np.clip(peaks, 0.0, 1.0)
    return [round(float(value), PEAK_DECIMALS) for value in peaks]


def generate_waveform(
    audio_path: str | Path,
    sample_id: str,
    public: Storage,
    run: ToolRunner = run_tool,
    points: int = WAVEFORM_POINTS,
) -> WaveformResult:
    """Decode the canonical artifact and write its waveform JSON.

    Returns:
        WaveformResult with success/failure status and metrics.
    """
    audio_path = Path(audio_path)
    logical = waveform_artifact_path(sample_id)
    output_path = public.path(logical)

    if output_path.is_file() and output_path.stat().st_size > 0:
        logger.info("Waveform already exists for sample_id=%s", sample_id)
        return WaveformResult(ok=True, message="Artifact already exists", artifact_path=logical)

    if not audio_path.is_file():
        logger.error("Waveform input not found: %s", audio_path)
        return WaveformResult(
            ok=False,
            error_code=WaveformErrorCode.INPUT_NOT_FOUND,
            message=f"Input not found: {audio_path.name}",
        )

    start = time.monotonic()
    result = run(build_decode_command(audio_path), text=False)
    if not result.ok:
        reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
        return WaveformResult(
            ok=False,
            error_code=WaveformErrorCode.DECODE_FAILED,
            message=f"Decoder {reason}",
            stderr=result.stderr_tail,
        )

    pcm = result.stdout if isinstance(result.stdout, bytes) else b""
    # Drop a trailing odd byte so the buffer is whole int16 frames
    pcm = pcm[: len(pcm) - (len(pcm) % 2)]
    samples = np.frombuffer(pcm, dtype="<i2")
    if samples.size == 0:
        return WaveformResult(
            ok=False,
            error_code=WaveformErrorCode.AUDIO_EMPTY,
            message="Decoding produced no audio",
            stderr=result.stderr_tail,
        )

    peaks = compute_peaks(samples, points)
    metrics = WaveformMetrics(
        duration_sec=round(samples.size / WAVEFORM_DECODE_SAMPLE_RATE, 3),
        sample_count=int(samples.size),
        compute_time_ms=int((time.monotonic() - start) * 1000),
    )

    output_data = {
        "version": WAVEFORM_VERSION,
        "sample_id": sample_id,
        "points": points,
        "sample_rate": WAVEFORM_DECODE_SAMPLE_RATE,
        "duration_sec": metrics.duration_sec,
        "peaks": peaks,
    }
    try:
        atomic_write_text(output_path, json.dumps(output_data, separators=(",", ":")))
    except OSError as e:
        logger.error("Failed to write waveform: %s", e)
        return WaveformResult(
            ok=False,
            error_code=WaveformErrorCode.WORKER_ERROR,
            message=f"Failed to write waveform: {e}",
            metrics=metrics,
        )

    logger.info(
        "Waveform complete for sample_id=%s: %.2fs, %d points, %dms",
        sample_id,
        metrics.duration_sec,
        points,
        metrics.compute_time_ms,
    )
    return WaveformResult(
        ok=True,
        message="Waveform generated successfully",
        metrics=metrics,
        artifact_path=logical,
    )


if __name__ == "__main__":
    import sys

    from sampler.storage import default_public_storage

    logging.basicConfig(level=logging.INFO)

    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <audio_path> <sample_id>")
        sys.exit(1)

    result = generate_waveform(sys.argv[1], sys.argv[2], default_public_storage())
    if result.ok:
        print(f"Success: {result.artifact_path}")
        sys.exit(0)
    else:
        print(f"Error: {result.error_code} - {result.message}")
        sys.exit(1)
