"""Tests for the Resource Store (sampler.store)."""

import pytest

from sampler.errors import InvalidTransition
from sampler.models import ProcessingState, Visibility
from sampler.store import SampleStore


@pytest.fixture
def store(temp_db):
    _, _, SessionFactory = temp_db
    return SampleStore(SessionFactory)


@pytest.fixture
def sample_id(store):
    return store.create(owner_id="user-1", name="kick.wav")


def advance_to_waveform(store, sample_id):
    assert store.transition(sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
    assert store.transition(
        sample_id, ProcessingState.TRANSCODING, ProcessingState.WAVEFORM_GENERATING
    )


class TestCreate:
    """Samples start pending and private."""

    def test_create_defaults(self, store, sample_id):
        sample = store.get(sample_id)
        assert sample.processing_state == ProcessingState.PENDING
        assert sample.visibility == Visibility.PRIVATE
        assert sample.owner_id == "user-1"
        assert sample.audio_path is None
        assert sample.tag_names == []

    def test_ids_are_unique(self, store):
        ids = {store.create(owner_id="u", name=f"s{i}") for i in range(20)}
        assert len(ids) == 20

    def test_get_unknown_returns_none(self, store):
        assert store.get("missing") is None


class TestTransition:
    """Conditional, monotonic state changes."""

    def test_forward_transition(self, store, sample_id):
        assert store.transition(sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
        assert store.get_state(sample_id) == ProcessingState.TRANSCODING

    def test_stale_from_state_returns_false(self, store, sample_id):
        store.transition(sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING)
        assert not store.transition(
            sample_id, ProcessingState.PENDING, ProcessingState.TRANSCODING
        )

    def test_regression_is_invalid(self, store, sample_id):
        with pytest.raises(InvalidTransition):
            store.transition(sample_id, ProcessingState.TRANSCODING, ProcessingState.PENDING)

    def test_skipping_is_invalid(self, store, sample_id):
        with pytest.raises(InvalidTransition):
            store.transition(sample_id, ProcessingState.PENDING, ProcessingState.PUBLISHED)

    def test_leaving_failed_is_invalid(self, store, sample_id):
        with pytest.raises(InvalidTransition):
            store.transition(sample_id, ProcessingState.FAILED, ProcessingState.TRANSCODING)

    def test_unknown_sample_returns_false(self, store):
        assert not store.transition("missing", ProcessingState.PENDING, ProcessingState.TRANSCODING)


class TestArtifacts:
    """Artifact path updates."""

    def test_update_and_get_artifacts(self, store, sample_id):
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        store.update_artifact(sample_id, "waveform_path", "waveforms/x.waveform.json")
        artifacts = store.get_artifacts(sample_id)
        assert artifacts.audio_path == "audio/x.mp3"
        assert artifacts.waveform_path == "waveforms/x.waveform.json"

    def test_non_artifact_field_rejected(self, store, sample_id):
        with pytest.raises(ValueError):
            store.update_artifact(sample_id, "visibility", "public")

    def test_unknown_sample_raises(self, store):
        with pytest.raises(LookupError):
            store.update_artifact("missing", "audio_path", "audio/x.mp3")
        with pytest.raises(LookupError):
            store.get_artifacts("missing")


class TestPublish:
    """Public implies both artifacts set."""

    def test_publish_requires_both_artifacts(self, store, sample_id):
        advance_to_waveform(store, sample_id)
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        assert not store.publish(sample_id)
        assert store.get(sample_id).visibility == Visibility.PRIVATE

    def test_publish_flips_state_and_visibility(self, store, sample_id):
        advance_to_waveform(store, sample_id)
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        store.update_artifact(sample_id, "waveform_path", "waveforms/x.waveform.json")
        assert store.publish(sample_id)
        sample = store.get(sample_id)
        assert sample.processing_state == ProcessingState.PUBLISHED
        assert sample.visibility == Visibility.PUBLIC

    def test_publish_only_from_waveform_generating(self, store, sample_id):
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        store.update_artifact(sample_id, "waveform_path", "waveforms/x.waveform.json")
        assert not store.publish(sample_id)

    def test_transition_to_published_delegates_to_publish(self, store, sample_id):
        advance_to_waveform(store, sample_id)
        assert not store.transition(
            sample_id, ProcessingState.WAVEFORM_GENERATING, ProcessingState.PUBLISHED
        )


class TestMarkFailed:
    """Failed is reachable from any non-terminal state and is permanent."""

    def test_mark_failed_records_error(self, store, sample_id):
        assert store.mark_failed(sample_id, "TRANSCODE_FAILED", "bad input")
        sample = store.get(sample_id)
        assert sample.processing_state == ProcessingState.FAILED
        assert sample.visibility == Visibility.PRIVATE
        assert sample.failure_code == "TRANSCODE_FAILED"
        assert sample.failure_message == "bad input"

    def test_failed_sample_cannot_be_published(self, store, sample_id):
        advance_to_waveform(store, sample_id)
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        store.update_artifact(sample_id, "waveform_path", "waveforms/x.waveform.json")
        store.mark_failed(sample_id, "WAVEFORM_FAILED", "x")
        assert not store.publish(sample_id)

    def test_published_sample_cannot_fail(self, store, sample_id):
        advance_to_waveform(store, sample_id)
        store.update_artifact(sample_id, "audio_path", "audio/x.mp3")
        store.update_artifact(sample_id, "waveform_path", "waveforms/x.waveform.json")
        store.publish(sample_id)
        assert not store.mark_failed(sample_id, "STALE_STATE", "late failure")
        assert store.get(sample_id).visibility == Visibility.PUBLIC

    def test_second_failure_keeps_first(self, store, sample_id):
        store.mark_failed(sample_id, "DOWNLOAD_FAILED", "first")
        assert not store.mark_failed(sample_id, "WORKER_ERROR", "second")
        assert store.get(sample_id).failure_code == "DOWNLOAD_FAILED"


class TestTags:
    """First-or-create tags, duplicates ignored."""

    def test_attach_creates_tags(self, store, sample_id):
        assert store.attach_tags(sample_id, ["drums", "loop"]) == 2
        assert store.get(sample_id).tag_names == ["drums", "loop"]

    def test_attach_is_idempotent(self, store, sample_id):
        store.attach_tags(sample_id, ["drums"])
        assert store.attach_tags(sample_id, ["drums", "drums", " "]) == 0
        assert store.get(sample_id).tag_names == ["drums"]

    def test_tags_shared_between_samples(self, store, sample_id):
        other = store.create(owner_id="user-2", name="snare.wav")
        store.attach_tags(sample_id, ["drums"])
        store.attach_tags(other, ["drums", "snare"])
        assert store.get(other).tag_names == ["drums", "snare"]
        assert store.get(sample_id).tag_names == ["drums"]

    def test_attach_to_unknown_sample_raises(self, store):
        with pytest.raises(LookupError):
            store.attach_tags("missing", ["x"])
