"""Sampler - Ingest API FastAPI application.

Thin HTTP surface over the Pipeline Orchestrator. Ingestion returns as soon
as the Sample exists and its chain is submitted; processing continues
asynchronously and is observed by polling GET /v1/samples/{sample_id}.

The owning user is an explicit request field (owner_id); this service does
no authentication of its own.

Run with:
    uvicorn services.ingest_api.main:app --reload  # dev server only
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from sampler.errors import ErrorCode, QueueUnavailable, ValidationError
from sampler.orchestrator import PipelineOrchestrator, get_orchestrator
from sampler.schemas import (
    ErrorResponse,
    IngestUrlRequest,
    SampleResponse,
    ValidationErrorResponse,
)
from sampler.validation import validate_upload

logger = logging.getLogger(__name__)

# --- Orchestrator Setup ---

# Module-level orchestrator (initialized on startup or overridden in tests)
_orchestrator: PipelineOrchestrator | None = None


def get_pipeline() -> PipelineOrchestrator:
    """Dependency that provides the orchestrator.

    Raises:
        RuntimeError: If not initialized (app lifespan not invoked).
    """
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not initialized. App lifespan not invoked?")
    return _orchestrator


# --- Lifespan ---


def _cleanup_orphan_temp_files_safe(orchestrator: PipelineOrchestrator) -> None:
    """Clean up incomplete writes on both disks (best-effort, never fails startup)."""
    try:
        removed = orchestrator.cleanup_orphans()
        if removed > 0:
            logger.info("Startup cleanup: removed %d orphan temp files", removed)
    except Exception:
        logger.warning("Startup cleanup failed (non-fatal)", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the default orchestrator unless a test installed one."""
    global _orchestrator
    owned = _orchestrator is None
    if owned:
        _orchestrator = get_orchestrator()

    _cleanup_orphan_temp_files_safe(_orchestrator)

    yield

    if owned:
        _orchestrator.shutdown(wait=True)
        _orchestrator = None


# --- FastAPI App ---


app = FastAPI(
    title="Sampler - Ingest API",
    description="Audio sample ingestion (upload + remote URL).",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def make_validation_response(errors: dict[str, list[str]]) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ValidationErrorResponse(errors=errors).model_dump(),
    )


def make_error_response(
    status_code: int, error_code: str, error_message: str, retryable: bool = False
) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error_code=error_code,
            error_message=error_message,
            retryable=retryable,
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Reshape framework validation errors into the field-keyed form."""
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "request"
        errors.setdefault(field, []).append(error.get("msg", "Invalid value"))
    return make_validation_response(errors)


def _ingest_failure_response(exc: Exception, what: str) -> JSONResponse:
    if isinstance(exc, ValidationError):
        return make_validation_response(exc.errors)
    if isinstance(exc, QueueUnavailable):
        return make_error_response(503, exc.error_code, exc.message, retryable=exc.retryable)
    # Log full exception server-side, return generic message to client
    logger.exception("Unexpected error during %s ingest", what)
    return make_error_response(
        500, ErrorCode.INTERNAL_ERROR, "An unexpected error occurred during ingest"
    )


_INGEST_RESPONSES = {
    422: {"model": ValidationErrorResponse, "description": "Rejected input"},
    503: {"model": ErrorResponse, "description": "Queue unavailable, retry later"},
    500: {"model": ErrorResponse, "description": "Ingest failed"},
}


# --- Endpoints ---


@app.post(
    "/v1/samples/upload",
    status_code=201,
    response_model=SampleResponse,
    responses=_INGEST_RESPONSES,
    summary="Ingest an uploaded audio file",
    description="Create a sample from a multipart upload and start processing.",
)
def ingest_upload(
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
    audio: Annotated[UploadFile, File(description="Audio file (mp3, wav, ogg)")],
    owner_id: Annotated[str, Form(min_length=1, max_length=64, description="Owning user ID")],
):
    """Ingest an uploaded audio file.

    Accepts multipart form data with:
    - audio: The audio file (required, at most 10 MiB)
    - owner_id: Owning user (required)
    """
    try:
        audio.file.seek(0, os.SEEK_END)
        size = audio.file.tell()
        audio.file.seek(0)

        validate_upload(audio.filename, audio.content_type, size)
        sample = pipeline.ingest_upload(audio.file, audio.filename, owner_id)
        return SampleResponse.from_sample(sample)
    except Exception as e:
        return _ingest_failure_response(e, "upload")


@app.post(
    "/v1/samples/url",
    status_code=201,
    response_model=SampleResponse,
    responses=_INGEST_RESPONSES,
    summary="Ingest a remote media URL",
    description="Probe and validate a remote URL, then create a sample and start processing.",
)
def ingest_url(
    request: IngestUrlRequest,
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
):
    """Ingest a remote URL.

    The URL is probed synchronously; a rejected URL returns 422 and
    creates nothing.
    """
    try:
        sample = pipeline.ingest_url(request.url, request.owner_id)
        return SampleResponse.from_sample(sample)
    except Exception as e:
        return _ingest_failure_response(e, "url")


@app.get(
    "/v1/samples/{sample_id}",
    response_model=SampleResponse,
    responses={404: {"model": ErrorResponse, "description": "Sample not found"}},
    summary="Read a sample",
)
def get_sample(
    sample_id: str,
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
):
    """Current state of a sample, including processing_state and artifacts."""
    sample = pipeline.get_sample(sample_id)
    if sample is None:
        return make_error_response(
            404, ErrorCode.SAMPLE_NOT_FOUND, f"Sample not found: {sample_id}"
        )
    return SampleResponse.from_sample(sample)


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding the orchestrator ---


def override_orchestrator(orchestrator: PipelineOrchestrator | None) -> None:
    """Install (or clear, with None) the orchestrator used by the app."""
    global _orchestrator
    _orchestrator = orchestrator
