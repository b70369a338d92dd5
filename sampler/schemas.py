"""Sampler - Pydantic models.

Strict decoding of the downloader's probe output and the request/response
models of the ingest API.
"""

from datetime import datetime  # noqa: I001
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# --- External tool payloads ---


class ProbeResult(BaseModel):
    """Metadata-only probe output of the downloader.

    The tool emits many more keys than these; unknown keys are dropped and
    every known key is optional, since presence is never guaranteed.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    extractor_name: str | None = Field(
        default=None, alias="extractor", description="Extractor that handled the URL"
    )
    duration_seconds: float | None = Field(
        default=None,
        alias="duration",
        allow_inf_nan=False,
        description="Declared media duration",
    )
    title: str | None = Field(default=None, description="Media title")
    alt_title: str | None = Field(default=None, description="Alternative (track) title")
    webpage_url: str | None = Field(default=None, description="Canonical page URL")
    tags: list[str] = Field(default_factory=list, description="Free-form tags")
    thumbnail_url: str | None = Field(
        default=None, alias="thumbnail", description="Thumbnail image URL"
    )

    @field_validator("tags", mode="before")
    @classmethod
    def _keep_string_tags(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [tag for tag in value if isinstance(tag, str) and tag.strip()]

    @field_validator("title", "alt_title", "webpage_url", "thumbnail_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


# --- Request Models ---


class IngestUrlRequest(BaseModel):
    """Request payload for remote URL ingestion."""

    model_config = ConfigDict(extra="forbid")

    url: str = Field(..., min_length=1, max_length=2048, description="Remote media URL")
    owner_id: str = Field(..., min_length=1, max_length=64, description="Owning user ID")


# --- Response Models ---


class SampleResponse(BaseModel):
    """Sample as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    sample_id: str = Field(..., description="Opaque sample identifier")
    name: str = Field(..., description="Display name")
    description: str | None = Field(default=None, description="Free text, may embed attribution")
    owner_id: str = Field(..., description="Owning user ID")
    audio_path: str | None = Field(default=None, description="Canonical audio artifact")
    waveform_path: str | None = Field(default=None, description="Waveform artifact")
    thumbnail_path: str | None = Field(default=None, description="Thumbnail image")
    tags: list[str] = Field(default_factory=list, description="Tag names")
    visibility: str = Field(..., description="private or public")
    processing_state: str = Field(..., description="Pipeline progress")
    failure_code: str | None = Field(default=None, description="Error code if failed")
    created_at: datetime = Field(..., description="When the sample was created")

    @classmethod
    def from_sample(cls, sample) -> "SampleResponse":
        data = {name: getattr(sample, name) for name in cls.model_fields if name != "tags"}
        return cls(tags=sample.tag_names, **data)


class ValidationErrorResponse(BaseModel):
    """Field-keyed validation failure."""

    errors: dict[str, list[str]] = Field(..., description="Field name to messages")


class ErrorResponse(BaseModel):
    """Non-validation failure."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Stable error code")
    error_message: str = Field(..., description="Human-readable error description")
    retryable: bool = Field(default=False, description="True if the caller may retry later")


__all__ = [
    "ProbeResult",
    "IngestUrlRequest",
    "SampleResponse",
    "ValidationErrorResponse",
    "ErrorResponse",
]
