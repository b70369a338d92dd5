"""Sampler - Pipeline Orchestrator.

Entry points for both ingestion sources and the execution functions of
every chain link.

Upload chain:  transcode -> generate_waveform -> publish
URL chain:     download_transcode -> generate_waveform -> publish

The Sample is created synchronously so the caller gets an id at once; its
processing_state and artifact fields are changed only by link completions:
- each link claims its state with a conditional transition
- artifacts a link reports are written by on_link_success before the next
  link is dispatched
- any link failure marks the sample failed (it stays private)

Remote URLs are probed and validated before anything is created; a
rejected URL leaves no trace in the database.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import BinaryIO
from urllib.parse import urlparse

from sqlalchemy.orm import sessionmaker

from sampler.chains import Chain, Failure, Job, JobKind, Success
from sampler.config import MAX_ACTIVE_CHAINS, PIPELINE_BACKEND, WORKER_POOL_SIZE
from sampler.db import init_db
from sampler.downloader import download_audio, probe_url
from sampler.errors import (
    ArtifactInconsistency,
    ErrorCode,
    PipelineError,
    QueueUnavailable,
    TranscodeFailed,
    ValidationError,
    WaveformFailed,
)
from sampler.models import ProcessingState, Sample
from sampler.scheduler import DISPATCH_THREADS, ChainScheduler, Enqueue
from sampler.storage import Storage, default_local_storage, default_public_storage
from sampler.store import SampleStore
from sampler.thumbnails import ThumbnailFetcher, fetch_image_bytes, store_thumbnail
from sampler.utils.external import ToolRunner, run_tool
from sampler.utils.paths import audio_artifact_path, extension_of, temp_upload_path
from sampler.validation import UPLOAD_FIELD, URL_FIELD, validate_probe

logger = logging.getLogger(__name__)

# Failure messages stored on the sample are truncated to this length
FAILURE_MESSAGE_MAX_CHARS = 4000


class PipelineOrchestrator:
    """Builds and submits chains and executes their links."""

    def __init__(
        self,
        session_factory: sessionmaker,
        local: Storage,
        public: Storage,
        run: ToolRunner = run_tool,
        dispatch: str | Enqueue = DISPATCH_THREADS,
        workers: int = WORKER_POOL_SIZE,
        max_active_chains: int = MAX_ACTIVE_CHAINS,
        fetch_thumbnail: ThumbnailFetcher = fetch_image_bytes,
    ):
        self.store = SampleStore(session_factory)
        self.local = local
        self.public = public
        self._run = run
        self._fetch_thumbnail = fetch_thumbnail
        self.scheduler = ChainScheduler(
            session_factory,
            handlers={
                JobKind.TRANSCODE: self.run_transcode,
                JobKind.DOWNLOAD_TRANSCODE: self.run_download_transcode,
                JobKind.GENERATE_WAVEFORM: self.run_generate_waveform,
                JobKind.PUBLISH: self.run_publish,
            },
            listener=self,
            dispatch=dispatch,
            workers=workers,
            max_active_chains=max_active_chains,
        )

    # ------------------------------------------------------------------
    # Ingestion entry points
    # ------------------------------------------------------------------

    def ingest_upload(self, stream: BinaryIO, filename: str, owner_id: str) -> Sample:
        """Create a sample from an uploaded file and start its chain.

        The upload is expected to have passed validate_upload already.

        Raises:
            ValidationError: If the filename carries no extension.
            QueueUnavailable: The chain could not be submitted; the sample
                is left failed.
            OSError: The upload could not be stored; the sample is left
                failed.
        """
        ext = extension_of(filename)
        if ext is None:
            raise ValidationError.for_field(UPLOAD_FIELD, "The audio file must have an extension.")

        sample_id = self.store.create(owner_id=owner_id, name=filename)
        logical = temp_upload_path(sample_id, ext, int(time.time()))
        with self._failing_sample(sample_id):
            self.local.put(stream, logical)
            size = self.local.path(logical).stat().st_size
            self.store.update_artifact(sample_id, "source_path", logical)
        logger.info("Stored upload for sample %s at %s (%d bytes)", sample_id, logical, size)

        chain = Chain.of(sample_id, JobKind.TRANSCODE, JobKind.GENERATE_WAVEFORM, JobKind.PUBLISH)
        self._submit(chain)
        return self.store.get(sample_id)

    def ingest_url(self, url: str, owner_id: str) -> Sample:
        """Probe, validate and ingest a remote URL.

        Raises:
            ValidationError: URL malformed, probe failed, or the probe result
                was rejected. No sample exists in that case.
            QueueUnavailable: The chain could not be submitted; the sample
                is left failed.
        """
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError.for_field(URL_FIELD, "The url format is invalid.")

        probe = probe_url(url, self._run)
        metadata = validate_probe(probe, url)

        sample_id = self.store.create(
            owner_id=owner_id,
            name=metadata.name,
            description=metadata.description,
            source_url=url,
        )
        with self._failing_sample(sample_id):
            if metadata.tags:
                self.store.attach_tags(sample_id, metadata.tags)
            if metadata.thumbnail_url:
                thumbnail = store_thumbnail(
                    metadata.thumbnail_url,
                    sample_id,
                    self.local,
                    self.public,
                    self._fetch_thumbnail,
                    self._run,
                )
                if thumbnail is not None:
                    self.store.update_artifact(sample_id, "thumbnail_path", thumbnail)

        chain = Chain.of(
            sample_id,
            (JobKind.DOWNLOAD_TRANSCODE, {"url": url}),
            JobKind.GENERATE_WAVEFORM,
            JobKind.PUBLISH,
        )
        self._submit(chain)
        return self.store.get(sample_id)

    @contextmanager
    def _failing_sample(self, sample_id: str) -> Iterator[None]:
        """Mark the sample failed if preparing it raises, then re-raise."""
        try:
            yield
        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            self.store.mark_failed(
                sample_id, ErrorCode.INTERNAL_ERROR, message[:FAILURE_MESSAGE_MAX_CHARS]
            )
            raise

    def _submit(self, chain: Chain) -> None:
        try:
            self.scheduler.submit_chain(chain)
        except QueueUnavailable as e:
            self.store.mark_failed(chain.sample_id, e.error_code, e.message)
            raise

    def get_sample(self, sample_id: str) -> Sample | None:
        return self.store.get(sample_id)

    # ------------------------------------------------------------------
    # Link execution
    # ------------------------------------------------------------------

    def _enter_state(self, sample_id: str, from_state: str, to_state: str) -> None:
        """Claim the processing state a link works in.

        A sample already in to_state is a re-run of the same link after an
        interruption and proceeds.

        Raises:
            PipelineError: STALE_STATE if the sample is anywhere else.
        """
        current = self.store.get_state(sample_id)
        if current == to_state:
            logger.info("Sample %s already %s, resuming", sample_id, to_state)
            return
        if current is None:
            raise PipelineError(ErrorCode.STALE_STATE, f"sample {sample_id} not found")
        if not self.store.transition(sample_id, from_state, to_state):
            raise PipelineError(
                ErrorCode.STALE_STATE,
                f"sample {sample_id} is {self.store.get_state(sample_id)}, expected {from_state}",
            )

    def _transcode(self, sample_id: str, source_path: str) -> Success:
        # Imported lazily so the API process does not load the worker modules
        from services.worker_transcode.run import transcode_to_canonical

        result = transcode_to_canonical(
            self.local.path(source_path), sample_id, self.public, self._run
        )
        if not result.ok:
            raise TranscodeFailed(f"{result.error_code}: {result.message}", result.stderr)

        # The temporary input is no longer needed once the artifact exists
        if self.local.delete(source_path):
            logger.debug("Removed temporary input %s", source_path)
        return Success({"audio_path": result.artifact_path})

    def run_transcode(self, job: Job) -> Success:
        """transcode link: temporary upload -> canonical audio."""
        self._enter_state(job.sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
        sample = self.store.get(job.sample_id)
        if sample is None or not sample.source_path:
            raise PipelineError(ErrorCode.WORKER_ERROR, f"sample {job.sample_id} has no upload")
        return self._transcode(job.sample_id, sample.source_path)

    def run_download_transcode(self, job: Job) -> Success:
        """download_transcode link: remote URL -> temporary download -> canonical audio."""
        self._enter_state(job.sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
        url = job.payload.get("url")
        if not url:
            raise PipelineError(ErrorCode.WORKER_ERROR, "download_transcode link without url")

        logical_audio = audio_artifact_path(job.sample_id)
        if self.public.exists(logical_audio):
            logger.info("Canonical audio already exists for sample %s, skipping download", job.sample_id)
            return Success({"audio_path": logical_audio})

        source_path = download_audio(url, job.sample_id, self.local, self._run)
        self.store.update_artifact(job.sample_id, "source_path", source_path)
        return self._transcode(job.sample_id, source_path)

    def run_generate_waveform(self, job: Job) -> Success:
        """generate_waveform link: canonical audio -> waveform JSON."""
        from services.worker_waveform.run import generate_waveform

        self._enter_state(
            job.sample_id, ProcessingState.TRANSCODING, ProcessingState.WAVEFORM_GENERATING
        )
        artifacts = self.store.get_artifacts(job.sample_id)
        if not artifacts.audio_path:
            raise ArtifactInconsistency(job.sample_id, ["audio_path"])

        result = generate_waveform(
            self.public.path(artifacts.audio_path), job.sample_id, self.public, self._run
        )
        if not result.ok:
            raise WaveformFailed(f"{result.error_code}: {result.message}", result.stderr)
        return Success({"waveform_path": result.artifact_path})

    def run_publish(self, job: Job) -> Success:
        """publish link: verify both artifacts, then flip to public."""
        if self.store.get_state(job.sample_id) == ProcessingState.PUBLISHED:
            return Success()

        artifacts = self.store.get_artifacts(job.sample_id)
        missing = [
            name
            for name, path in (
                ("audio_path", artifacts.audio_path),
                ("waveform_path", artifacts.waveform_path),
            )
            if not self.public.exists(path)
        ]
        if missing:
            logger.critical(
                "Refusing to publish sample %s, missing artifacts: %s",
                job.sample_id,
                ", ".join(missing),
            )
            raise ArtifactInconsistency(job.sample_id, missing)

        if not self.store.publish(job.sample_id):
            raise PipelineError(
                ErrorCode.STALE_STATE,
                f"sample {job.sample_id} is {self.store.get_state(job.sample_id)}, cannot publish",
            )
        return Success()

    # ------------------------------------------------------------------
    # Chain listener
    # ------------------------------------------------------------------

    def on_link_success(self, job: Job, result: Success) -> None:
        for field, path in result.artifacts.items():
            self.store.update_artifact(job.sample_id, field, path)

    def on_link_failure(self, job: Job, result: Failure) -> None:
        self.store.mark_failed(
            job.sample_id, result.error_code, result.detail[:FAILURE_MESSAGE_MAX_CHARS]
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cleanup_orphans(self) -> int:
        """Remove incomplete writes from both disks. Returns files removed."""
        return self.local.cleanup_orphans() + self.public.cleanup_orphans()

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)


# --- Process-wide default ---

_default_orchestrator: PipelineOrchestrator | None = None
_default_lock = threading.Lock()


def get_orchestrator() -> PipelineOrchestrator:
    """Orchestrator over the configured database, disks and backend."""
    global _default_orchestrator
    with _default_lock:
        if _default_orchestrator is None:
            _, session_factory = init_db()
            if PIPELINE_BACKEND == "huey":
                # Import here to avoid circular imports
                from sampler.huey_app import enqueue_chain_link

                dispatch: str | Enqueue = enqueue_chain_link
            else:
                dispatch = PIPELINE_BACKEND
            _default_orchestrator = PipelineOrchestrator(
                session_factory,
                default_local_storage(),
                default_public_storage(),
                dispatch=dispatch,
            )
            logger.info("Pipeline orchestrator ready (backend=%s)", PIPELINE_BACKEND)
        return _default_orchestrator
