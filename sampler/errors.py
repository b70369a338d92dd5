"""Sampler - Error taxonomy.

Every pipeline error carries a stable error_code and a human-readable message.
Errors raised inside a chain link are converted to a Failure result by the
scheduler; ValidationError never reaches the asynchronous pipeline.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error codes recorded on chains, links and samples."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    EXTERNAL_TOOL_FAILED = "EXTERNAL_TOOL_FAILED"
    TOOL_NOT_ALLOWED = "TOOL_NOT_ALLOWED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    TRANSCODE_FAILED = "TRANSCODE_FAILED"
    WAVEFORM_FAILED = "WAVEFORM_FAILED"
    QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"
    ARTIFACT_INCONSISTENCY = "ARTIFACT_INCONSISTENCY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STALE_STATE = "STALE_STATE"
    UNKNOWN_JOB_KIND = "UNKNOWN_JOB_KIND"
    WORKER_ERROR = "WORKER_ERROR"
    SAMPLE_NOT_FOUND = "SAMPLE_NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class ValidationError(PipelineError):
    """Rejected ingestion input, keyed by field name.

    Attributes:
        errors: Mapping of field name to human-readable messages.
    """

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        summary = "; ".join(f"{key}: {', '.join(msgs)}" for key, msgs in errors.items())
        super().__init__(ErrorCode.VALIDATION_FAILED, summary)

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        return cls({field: [message]})


class ExternalToolError(PipelineError):
    """An external process exited non-zero, timed out or could not be run."""

    def __init__(
        self,
        message: str,
        stderr: str = "",
        error_code: str = ErrorCode.EXTERNAL_TOOL_FAILED,
    ):
        self.stderr = stderr
        super().__init__(error_code, message)

    @property
    def detail(self) -> str:
        if not self.stderr:
            return self.message
        return f"{self.message}\n{self.stderr}"


class TranscodeFailed(ExternalToolError):
    """The encoder could not produce a playable canonical artifact."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, stderr, ErrorCode.TRANSCODE_FAILED)


class WaveformFailed(ExternalToolError):
    """The canonical artifact could not be decoded into a waveform."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message, stderr, ErrorCode.WAVEFORM_FAILED)


class QueueUnavailable(PipelineError):
    """The scheduler cannot accept new work. Retryable by the caller."""

    retryable = True

    def __init__(self, reason: str):
        super().__init__(ErrorCode.QUEUE_UNAVAILABLE, f"Queue unavailable: {reason}")


class ArtifactInconsistency(PipelineError):
    """Publish found missing artifacts despite prior link success."""

    def __init__(self, sample_id: str, missing: list[str]):
        self.sample_id = sample_id
        self.missing = missing
        super().__init__(
            ErrorCode.ARTIFACT_INCONSISTENCY,
            f"Sample {sample_id} cannot be published, missing: {', '.join(missing)}",
        )


class InvalidTransition(PipelineError):
    """A processing state transition that would regress or skip a state."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            ErrorCode.INVALID_TRANSITION,
            f"Transition {from_state} -> {to_state} is not allowed",
        )
