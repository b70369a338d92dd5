"""Sampler - Metadata Validator and upload checks.

The probe step trusts the output of an external, attacker-influenceable
tool. validate_probe is the single choke point that decides whether a
remote source may enter the pipeline; nothing from the probe reaches the
database before it passes.

Rules (first failing rule wins):
1. Untrusted extractor without a declared duration -> reject
2. Duration missing, not finite, < MIN_DURATION_SECONDS or
   >= MAX_DURATION_SECONDS -> reject
3. Otherwise accept
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

import pydantic

from sampler.config import (
    ALLOWED_UPLOAD_EXTENSIONS,
    ALLOWED_UPLOAD_MIME_TYPES,
    MAX_DURATION_SECONDS,
    MIN_DURATION_SECONDS,
    TRUSTED_EXTRACTORS,
    UPLOAD_MAX_BYTES,
)
from sampler.errors import ValidationError
from sampler.schemas import ProbeResult
from sampler.utils.paths import extension_of

logger = logging.getLogger(__name__)

URL_FIELD = "url"
UPLOAD_FIELD = "audio"

MSG_NO_INFORMATION = "No information could be found for this URL."
MSG_UNTRUSTED_NO_DURATION = (
    "This source is not trusted and does not declare a duration; it cannot be imported."
)
MSG_DURATION_RANGE = (
    f"The media must last at least {MIN_DURATION_SECONDS} second "
    f"and less than {MAX_DURATION_SECONDS // 60} minutes."
)

DESCRIPTION_TEMPLATE = "Source: {webpage_url} ({extractor})"


@dataclass(frozen=True)
class ValidatedMetadata:
    """Accepted probe fields, ready to populate a Sample."""

    name: str
    description: str
    duration_seconds: float
    extractor: str
    webpage_url: str | None = None
    thumbnail_url: str | None = None
    tags: list[str] = field(default_factory=list)


def parse_probe(raw: Any) -> ProbeResult:
    """Decode raw probe JSON into a ProbeResult.

    Raises:
        ValidationError: On the url field if the payload is not a JSON
            object or has wrongly typed fields.
    """
    if not isinstance(raw, dict):
        raise ValidationError.for_field(URL_FIELD, MSG_NO_INFORMATION)
    try:
        return ProbeResult.model_validate(raw)
    except pydantic.ValidationError as e:
        logger.warning("Malformed probe result: %s", e.errors(include_url=False))
        raise ValidationError.for_field(URL_FIELD, MSG_NO_INFORMATION) from e


def validate_probe(probe: ProbeResult, url: str | None = None) -> ValidatedMetadata:
    """Apply the source trust and duration rules to a probe result.

    Args:
        probe: Decoded probe output.
        url: Submitted URL, used for naming when the probe carries no title.

    Returns:
        ValidatedMetadata with derived name and attribution description.

    Raises:
        ValidationError: Keyed by "url" with the message of the first failing rule.
    """
    extractor = (probe.extractor_name or "").strip()
    trusted = extractor.lower() in TRUSTED_EXTRACTORS
    duration = probe.duration_seconds

    if not trusted and duration is None:
        logger.warning("Rejected %s: untrusted extractor %r without duration", url, extractor)
        raise ValidationError.for_field(URL_FIELD, MSG_UNTRUSTED_NO_DURATION)

    # A trusted source that omits the duration still fails the range check
    if (
        duration is None
        or not math.isfinite(duration)
        or duration < MIN_DURATION_SECONDS
        or duration >= MAX_DURATION_SECONDS
    ):
        logger.warning("Rejected %s: duration %s out of range", url, duration)
        raise ValidationError.for_field(URL_FIELD, MSG_DURATION_RANGE)

    webpage_url = probe.webpage_url or url
    name = probe.alt_title or probe.title or webpage_url or "Untitled"
    description = DESCRIPTION_TEMPLATE.format(
        webpage_url=webpage_url or "unknown", extractor=extractor or "unknown"
    )
    return ValidatedMetadata(
        name=name,
        description=description,
        duration_seconds=float(duration),
        extractor=extractor,
        webpage_url=webpage_url,
        thumbnail_url=probe.thumbnail_url,
        tags=list(dict.fromkeys(probe.tags)),
    )


def validate_upload(filename: str | None, content_type: str | None, size: int) -> str:
    """Check an uploaded file against the size and type allow-lists.

    Returns:
        Normalized file extension (without dot).

    Raises:
        ValidationError: Keyed by "audio", one message per failed check.
    """
    messages: list[str] = []
    if not filename:
        raise ValidationError.for_field(UPLOAD_FIELD, "The audio file is required.")

    if size <= 0:
        messages.append("The audio file is empty.")
    elif size > UPLOAD_MAX_BYTES:
        messages.append(
            f"The audio file may not be greater than {UPLOAD_MAX_BYTES // 1024} kilobytes."
        )

    ext = extension_of(filename)
    mime = (content_type or "").split(";")[0].strip().lower()
    if ext not in ALLOWED_UPLOAD_EXTENSIONS or (mime and mime not in ALLOWED_UPLOAD_MIME_TYPES):
        messages.append(
            "The audio file must be a file of type: " + ", ".join(ALLOWED_UPLOAD_EXTENSIONS) + "."
        )

    if messages:
        logger.warning("Rejected upload %r (%s, %d bytes)", filename, mime, size)
        raise ValidationError({UPLOAD_FIELD: messages})
    return ext
