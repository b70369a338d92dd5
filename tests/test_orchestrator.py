"""Tests for the Pipeline Orchestrator (sampler.orchestrator).

End-to-end through the scheduler with the fake tool runner: uploads and
remote URLs go from ingestion to a published (or failed) sample.
"""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from sampler.chains import Failure, Job, JobKind, Success
from sampler.errors import ArtifactInconsistency, ErrorCode, QueueUnavailable, ValidationError
from sampler.models import ChainStatus, LinkStatus, ProcessingState, Sample, Visibility
from sampler.orchestrator import PipelineOrchestrator
from sampler.scheduler import DISPATCH_INLINE, DISPATCH_THREADS
from sampler.thumbnails import ThumbnailError
from sampler.utils.external import ToolResult
from sampler.utils.paths import audio_artifact_path, waveform_artifact_path
from sampler.validation import MSG_DURATION_RANGE, MSG_NO_INFORMATION

YOUTUBE_URL = "https://www.youtube.com/watch?v=abc123"


def sample_count(temp_db) -> int:
    _, _, SessionFactory = temp_db
    with SessionFactory() as session:
        return session.execute(select(func.count()).select_from(Sample)).scalar_one()


def upload(orchestrator, data, filename="kick.wav", owner_id="user-1"):
    return orchestrator.ingest_upload(io.BytesIO(data), filename, owner_id)


class TestUploadChain:
    """transcode -> generate_waveform -> publish."""

    def test_upload_is_published(self, orchestrator, wav_bytes, fake_tools):
        sample = upload(orchestrator, wav_bytes)

        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.visibility == Visibility.PUBLIC
        assert sample.name == "kick.wav"
        assert sample.audio_path == audio_artifact_path(sample.sample_id)
        assert sample.waveform_path == waveform_artifact_path(sample.sample_id)
        assert orchestrator.public.exists(sample.audio_path)
        assert orchestrator.public.exists(sample.waveform_path)
        assert fake_tools.ops() == ["encode", "verify", "decode"]

    def test_temporary_upload_removed(self, orchestrator, wav_bytes):
        sample = upload(orchestrator, wav_bytes)
        assert sample.source_path.startswith(f"temp/{sample.sample_id}_audio_")
        assert sample.source_path.endswith(".wav")
        assert not orchestrator.local.exists(sample.source_path)

    def test_chain_links_completed(self, orchestrator, wav_bytes):
        sample = upload(orchestrator, wav_bytes)
        (handle,) = orchestrator.scheduler.chains_for_sample(sample.sample_id)
        assert handle.status == ChainStatus.COMPLETED
        kinds = [link.kind for link in orchestrator.scheduler.get_links(handle.chain_id)]
        assert kinds == [JobKind.TRANSCODE, JobKind.GENERATE_WAVEFORM, JobKind.PUBLISH]

    def test_transcode_failure_stops_chain(self, orchestrator, wav_bytes, fake_tools):
        fake_tools.fail.add("encode")
        sample = upload(orchestrator, wav_bytes)

        assert sample.processing_state == ProcessingState.FAILED
        assert sample.visibility == Visibility.PRIVATE
        assert sample.failure_code == ErrorCode.TRANSCODE_FAILED
        assert "ENCODE_FAILED" in sample.failure_message
        assert sample.audio_path is None
        assert "decode" not in fake_tools.ops()

        (handle,) = orchestrator.scheduler.chains_for_sample(sample.sample_id)
        statuses = [link.status for link in orchestrator.scheduler.get_links(handle.chain_id)]
        assert statuses == [LinkStatus.FAILED, LinkStatus.SKIPPED, LinkStatus.SKIPPED]

    def test_waveform_failure_keeps_sample_private(self, orchestrator, wav_bytes, fake_tools):
        fake_tools.fail.add("decode")
        sample = upload(orchestrator, wav_bytes)
        assert sample.processing_state == ProcessingState.FAILED
        assert sample.failure_code == ErrorCode.WAVEFORM_FAILED
        assert sample.audio_path is not None
        assert sample.waveform_path is None
        assert sample.visibility == Visibility.PRIVATE

    def test_filename_without_extension_rejected(self, orchestrator, wav_bytes, temp_db):
        with pytest.raises(ValidationError):
            upload(orchestrator, wav_bytes, filename="noext")
        assert sample_count(temp_db) == 0


class TestUrlChain:
    """download_transcode -> generate_waveform -> publish."""

    def test_url_is_published_with_metadata(self, orchestrator, fake_tools, fake_thumbnail_fetch):
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")

        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.visibility == Visibility.PUBLIC
        assert sample.name == "Drum Loop 120bpm"
        assert sample.description == f"Source: {YOUTUBE_URL} (youtube)"
        assert sample.source_url == YOUTUBE_URL
        assert sample.tag_names == ["drums", "loop"]
        assert fake_tools.ops() == ["probe", "thumbnail", "download", "encode", "verify", "decode"]

    def test_thumbnail_stored(self, orchestrator, fake_thumbnail_fetch):
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert fake_thumbnail_fetch.requested == ["https://i.ytimg.com/vi/abc123/hqdefault.jpg"]
        assert sample.thumbnail_path.startswith(f"images/{sample.sample_id}_thumbnail_")
        assert orchestrator.public.exists(sample.thumbnail_path)

    def test_download_removed_after_transcode(self, orchestrator):
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert sample.source_path == f"temp/{sample.sample_id}_download.webm"
        assert not orchestrator.local.exists(sample.source_path)

    def test_rejected_url_creates_nothing(self, orchestrator, fake_tools, temp_db):
        fake_tools.probe["duration"] = 600
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert exc_info.value.errors == {"url": [MSG_DURATION_RANGE]}
        assert sample_count(temp_db) == 0
        assert fake_tools.ops() == ["probe"]

    def test_probe_failure(self, orchestrator, fake_tools, temp_db):
        fake_tools.fail.add("probe")
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert exc_info.value.errors == {"url": [MSG_NO_INFORMATION]}
        assert sample_count(temp_db) == 0

    @pytest.mark.parametrize("url", ["ftp://example.com/a.mp3", "not a url", "https://"])
    def test_malformed_url_not_probed(self, orchestrator, fake_tools, url):
        with pytest.raises(ValidationError):
            orchestrator.ingest_url(url, "user-1")
        assert fake_tools.ops() == []

    def test_download_failure(self, orchestrator, fake_tools):
        fake_tools.fail.add("download")
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert sample.processing_state == ProcessingState.FAILED
        assert sample.failure_code == ErrorCode.DOWNLOAD_FAILED
        assert sample.visibility == Visibility.PRIVATE

    def test_thumbnail_failure_is_not_fatal(self, temp_db, storages, fake_tools):
        def broken_fetch(url):
            raise ThumbnailError("404")

        _, _, SessionFactory = temp_db
        local, public = storages
        orch = PipelineOrchestrator(
            SessionFactory,
            local,
            public,
            run=fake_tools,
            dispatch=DISPATCH_INLINE,
            fetch_thumbnail=broken_fetch,
        )
        sample = orch.ingest_url(YOUTUBE_URL, "user-1")
        orch.shutdown()

        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.thumbnail_path is None

    def test_thumbnail_conversion_failure_is_not_fatal(self, orchestrator, fake_tools):
        fake_tools.fail.add("thumbnail")
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.thumbnail_path is None

    def test_malformed_thumbnail_url_is_not_fatal(self, temp_db, storages, fake_tools):
        """The real fetcher turns a malformed URL into a skipped thumbnail."""
        fake_tools.probe["thumbnail"] = "http://[::1/thumb.jpg"
        _, _, SessionFactory = temp_db
        local, public = storages
        orch = PipelineOrchestrator(
            SessionFactory, local, public, run=fake_tools, dispatch=DISPATCH_INLINE
        )
        sample = orch.ingest_url(YOUTUBE_URL, "user-1")
        chains = orch.scheduler.chains_for_sample(sample.sample_id)
        orch.shutdown()

        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.thumbnail_path is None
        assert [chain.status for chain in chains] == [ChainStatus.COMPLETED]

    def test_no_thumbnail_url_skips_fetch(self, orchestrator, fake_tools, fake_thumbnail_fetch):
        fake_tools.probe["thumbnail"] = None
        sample = orchestrator.ingest_url(YOUTUBE_URL, "user-1")
        assert fake_thumbnail_fetch.requested == []
        assert sample.thumbnail_path is None


class TestQueueUnavailable:
    """A refused submission leaves a failed sample and reaches the caller."""

    def test_sample_marked_failed(self, orchestrator, wav_bytes, temp_db):
        with patch.object(
            orchestrator.scheduler, "submit_chain", side_effect=QueueUnavailable("saturated")
        ):
            with pytest.raises(QueueUnavailable):
                upload(orchestrator, wav_bytes)

        _, _, SessionFactory = temp_db
        with SessionFactory() as session:
            sample = session.execute(select(Sample)).scalar_one()
            assert sample.processing_state == ProcessingState.FAILED
            assert sample.failure_code == ErrorCode.QUEUE_UNAVAILABLE


class TestPreparationFailure:
    """A sample whose preparation raises is failed, never left pending."""

    def test_upload_store_failure(self, orchestrator, wav_bytes, temp_db):
        with patch.object(orchestrator.local, "put", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                upload(orchestrator, wav_bytes)

        _, _, SessionFactory = temp_db
        with SessionFactory() as session:
            sample = session.execute(select(Sample)).scalar_one()
            assert sample.processing_state == ProcessingState.FAILED
            assert sample.failure_code == ErrorCode.INTERNAL_ERROR
            assert "disk full" in sample.failure_message
        assert orchestrator.scheduler.chains_for_sample(sample.sample_id) == []

    def test_tag_failure_after_create(self, orchestrator, temp_db):
        with patch.object(orchestrator.store, "attach_tags", side_effect=RuntimeError("locked")):
            with pytest.raises(RuntimeError):
                orchestrator.ingest_url(YOUTUBE_URL, "user-1")

        _, _, SessionFactory = temp_db
        with SessionFactory() as session:
            sample = session.execute(select(Sample)).scalar_one()
            assert sample.processing_state == ProcessingState.FAILED
            assert sample.visibility == Visibility.PRIVATE


class TestLinkIdempotency:
    """Re-deliveries and re-runs never corrupt a sample."""

    def test_duplicate_delivery_after_publish(self, orchestrator, wav_bytes, fake_tools):
        sample = upload(orchestrator, wav_bytes)
        (handle,) = orchestrator.scheduler.chains_for_sample(sample.sample_id)
        calls_before = len(fake_tools.calls)

        result = orchestrator.scheduler.run_link(handle.chain_id, 0)
        assert isinstance(result, Failure)
        assert len(fake_tools.calls) == calls_before
        assert orchestrator.get_sample(sample.sample_id).processing_state == ProcessingState.PUBLISHED

    def test_transcode_resumes_in_transcoding_state(self, orchestrator, wav_bytes):
        store = orchestrator.store
        sample_id = store.create(owner_id="user-1", name="kick.wav")
        orchestrator.local.put(wav_bytes, "temp/resume.wav")
        store.update_artifact(sample_id, "source_path", "temp/resume.wav")
        store.transition(sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)

        result = orchestrator.run_transcode(Job(sample_id=sample_id, kind=JobKind.TRANSCODE))
        assert result == Success({"audio_path": audio_artifact_path(sample_id)})

    def test_publish_refuses_missing_artifacts(self, orchestrator):
        store = orchestrator.store
        sample_id = store.create(owner_id="user-1", name="x.wav")
        store.transition(sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
        store.transition(sample_id, ProcessingState.TRANSCODING, ProcessingState.WAVEFORM_GENERATING)
        store.update_artifact(sample_id, "audio_path", audio_artifact_path(sample_id))

        with pytest.raises(ArtifactInconsistency) as exc_info:
            orchestrator.run_publish(Job(sample_id=sample_id, kind=JobKind.PUBLISH))
        assert exc_info.value.missing == ["audio_path", "waveform_path"]
        assert store.get(sample_id).visibility == Visibility.PRIVATE

    def test_cleanup_orphans(self, orchestrator):
        orchestrator.local.ensure_directory("temp")
        orchestrator.local.path("temp/partial.wav.tmp").write_bytes(b"x")
        orchestrator.public.ensure_directory("audio")
        orchestrator.public.path("audio/partial.mp3.tmp").write_bytes(b"x")
        assert orchestrator.cleanup_orphans() == 2


class TestConcurrentChains:
    """Many samples processed on the worker pool."""

    def test_all_uploads_published(self, threaded_orchestrator, wav_bytes, fake_tools):
        fake_tools.delays = {"encode": 0.01, "decode": 0.01}
        ids = [upload(threaded_orchestrator, wav_bytes, filename=f"s{i}.wav").sample_id for i in range(8)]

        assert threaded_orchestrator.scheduler.join(timeout=60)
        for sample_id in ids:
            sample = threaded_orchestrator.get_sample(sample_id)
            assert sample.processing_state == ProcessingState.PUBLISHED
            assert sample.visibility == Visibility.PUBLIC

    def test_one_failure_does_not_affect_others(self, temp_db, storages, fake_tools, wav_bytes):
        def picky(argv, timeout=None, text=True, allowed=None):
            argv = [str(arg) for arg in argv]
            if fake_tools.classify(argv) == "encode":
                source = Path(argv[argv.index("-i") + 1])
                if source.read_bytes().startswith(b"CORRUPT"):
                    return ToolResult(tuple(argv), 1, "", "Invalid data found when processing input")
            return fake_tools(argv, timeout=timeout, text=text)

        _, _, SessionFactory = temp_db
        local, public = storages
        orch = PipelineOrchestrator(
            SessionFactory, local, public, run=picky, dispatch=DISPATCH_THREADS, workers=4
        )
        bad = upload(orch, b"CORRUPT" * 100, filename="bad.wav").sample_id
        good = [upload(orch, wav_bytes, filename=f"g{i}.wav").sample_id for i in range(3)]
        assert orch.scheduler.join(timeout=60)
        orch.shutdown()

        failed = orch.get_sample(bad)
        assert failed.processing_state == ProcessingState.FAILED
        assert "Invalid data" in failed.failure_message
        for sample_id in good:
            assert orch.get_sample(sample_id).processing_state == ProcessingState.PUBLISHED
