"""Sampler - Resource Store.

Narrow read / compare-and-update contract over the samples table. Every
mutation is a single conditional UPDATE keyed by sample_id, so concurrent
chains for different samples need no cross-chain lock and stale or
out-of-order writes for the same sample are refused instead of applied.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from sampler.errors import InvalidTransition
from sampler.models import (
    TERMINAL_STATES,
    ProcessingState,
    Sample,
    Tag,
    Visibility,
    sample_tags,
    utc_now,
)

logger = logging.getLogger(__name__)

# Forward edges of the processing state machine. failed is handled separately.
ALLOWED_TRANSITIONS = frozenset(
    {
        (ProcessingState.PENDING, ProcessingState.TRANSCODING),
        (ProcessingState.TRANSCODING, ProcessingState.WAVEFORM_GENERATING),
        (ProcessingState.WAVEFORM_GENERATING, ProcessingState.PUBLISHED),
        (ProcessingState.PENDING, ProcessingState.FAILED),
        (ProcessingState.TRANSCODING, ProcessingState.FAILED),
        (ProcessingState.WAVEFORM_GENERATING, ProcessingState.FAILED),
    }
)

# Sample columns a chain link may set
ARTIFACT_FIELDS = frozenset({"source_path", "audio_path", "waveform_path", "thumbnail_path"})


@dataclass(frozen=True)
class SampleArtifacts:
    audio_path: str | None
    waveform_path: str | None


def generate_sample_id() -> str:
    """Generate a unique sample ID (uuid4 hex, 32 chars)."""
    return uuid.uuid4().hex


class SampleStore:
    """Durable record of each sample's processing state and artifacts."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(
        self,
        owner_id: str,
        name: str,
        description: str | None = None,
        source_url: str | None = None,
    ) -> str:
        """Insert a pending, private sample and return its sample_id."""
        sample_id = generate_sample_id()
        with self._session_factory() as session:
            session.add(
                Sample(
                    sample_id=sample_id,
                    owner_id=owner_id,
                    name=name[:255],
                    description=description,
                    source_url=source_url,
                    visibility=Visibility.PRIVATE,
                    processing_state=ProcessingState.PENDING,
                )
            )
            session.commit()
        logger.info("Created sample %s for owner %s", sample_id, owner_id)
        return sample_id

    def get(self, sample_id: str) -> Sample | None:
        """Load a detached sample snapshot (tags included)."""
        with self._session_factory() as session:
            stmt = select(Sample).where(Sample.sample_id == sample_id)
            return session.execute(stmt).scalar_one_or_none()

    def update_artifact(self, sample_id: str, field: str, path: str | None) -> None:
        """Set one artifact path column.

        Raises:
            ValueError: If field is not an artifact column.
            LookupError: If the sample does not exist.
        """
        if field not in ARTIFACT_FIELDS:
            raise ValueError(f"not an artifact field: {field}")
        with self._session_factory() as session:
            result = session.execute(
                update(Sample)
                .where(Sample.sample_id == sample_id)
                .values({field: path, "updated_at": utc_now()})
            )
            session.commit()
        if result.rowcount == 0:
            raise LookupError(f"sample not found: {sample_id}")
        logger.debug("Sample %s: %s=%s", sample_id, field, path)

    def transition(self, sample_id: str, from_state: str, to_state: str) -> bool:
        """Conditionally move processing_state from from_state to to_state.

        Returns:
            False if the sample is not currently in from_state.

        Raises:
            InvalidTransition: If the pair would regress or skip a state.
        """
        if (from_state, to_state) not in ALLOWED_TRANSITIONS:
            raise InvalidTransition(from_state, to_state)
        if to_state == ProcessingState.PUBLISHED:
            # Publishing also flips visibility; keep both in one statement
            return self.publish(sample_id)

        with self._session_factory() as session:
            result = session.execute(
                update(Sample)
                .where(Sample.sample_id == sample_id, Sample.processing_state == from_state)
                .values(processing_state=to_state, updated_at=utc_now())
            )
            session.commit()
        changed = result.rowcount == 1
        if changed:
            logger.info("Sample %s: %s -> %s", sample_id, from_state, to_state)
        else:
            logger.debug("Sample %s: %s -> %s refused (stale)", sample_id, from_state, to_state)
        return changed

    def get_artifacts(self, sample_id: str) -> SampleArtifacts:
        """Raises LookupError if the sample does not exist."""
        with self._session_factory() as session:
            row = session.execute(
                select(Sample.audio_path, Sample.waveform_path).where(
                    Sample.sample_id == sample_id
                )
            ).one_or_none()
        if row is None:
            raise LookupError(f"sample not found: {sample_id}")
        return SampleArtifacts(audio_path=row.audio_path, waveform_path=row.waveform_path)

    def get_state(self, sample_id: str) -> str | None:
        with self._session_factory() as session:
            return session.execute(
                select(Sample.processing_state).where(Sample.sample_id == sample_id)
            ).scalar_one_or_none()

    def publish(self, sample_id: str) -> bool:
        """Flip a fully processed sample to public in a single update.

        Only applies from waveform_generating and only while both artifact
        paths are set. Returns False otherwise.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(Sample)
                .where(
                    Sample.sample_id == sample_id,
                    Sample.processing_state == ProcessingState.WAVEFORM_GENERATING,
                    Sample.audio_path.is_not(None),
                    Sample.waveform_path.is_not(None),
                )
                .values(
                    processing_state=ProcessingState.PUBLISHED,
                    visibility=Visibility.PUBLIC,
                    updated_at=utc_now(),
                )
            )
            session.commit()
        published = result.rowcount == 1
        if published:
            logger.info("Sample %s published", sample_id)
        return published

    def mark_failed(self, sample_id: str, error_code: str, message: str) -> bool:
        """Move a non-terminal sample to failed, keeping it private.

        Returns:
            False if the sample was already published or failed.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(Sample)
                .where(
                    Sample.sample_id == sample_id,
                    Sample.processing_state.not_in([str(s) for s in TERMINAL_STATES]),
                )
                .values(
                    processing_state=ProcessingState.FAILED,
                    visibility=Visibility.PRIVATE,
                    failure_code=error_code,
                    failure_message=message,
                    updated_at=utc_now(),
                )
            )
            session.commit()
        failed = result.rowcount == 1
        if failed:
            logger.warning("Sample %s failed: %s - %s", sample_id, error_code, message)
        return failed

    def attach_tags(self, sample_id: str, names: Iterable[str]) -> int:
        """Attach tags by name, creating missing ones. Duplicates are ignored.

        Returns:
            Number of newly attached tags.
        """
        cleaned = {name.strip()[:255] for name in names if name and name.strip()}
        if not cleaned:
            return 0

        try:
            attached = self._attach_tags_once(sample_id, cleaned)
        except IntegrityError:
            # Another ingestion created one of the tags concurrently
            attached = self._attach_tags_once(sample_id, cleaned)

        logger.debug("Sample %s: attached %d tags", sample_id, attached)
        return attached

    def _attach_tags_once(self, sample_id: str, names: set[str]) -> int:
        with self._session_factory() as session:
            sample_pk = session.execute(
                select(Sample.id).where(Sample.sample_id == sample_id)
            ).scalar_one_or_none()
            if sample_pk is None:
                raise LookupError(f"sample not found: {sample_id}")

            existing = {
                tag.name: tag
                for tag in session.execute(select(Tag).where(Tag.name.in_(names))).scalars()
            }
            already = set(
                session.execute(
                    select(sample_tags.c.tag_pk).where(sample_tags.c.sample_pk == sample_pk)
                ).scalars()
            )

            attached = 0
            for name in sorted(names):
                tag = existing.get(name)
                if tag is None:
                    tag = Tag(name=name)
                    session.add(tag)
                    session.flush()
                if tag.id in already:
                    continue
                session.execute(sample_tags.insert().values(sample_pk=sample_pk, tag_pk=tag.id))
                already.add(tag.id)
                attached += 1
            session.commit()
        return attached
