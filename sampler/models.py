"""Sampler - SQLAlchemy ORM models.

Database tables:
1. samples
2. tags / sample_tags
3. chains
4. chain_links
"""

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class Visibility(StrEnum):
    PRIVATE = "private"
    PUBLIC = "public"


class ProcessingState(StrEnum):
    """Sample processing states.

    Monotonic: pending -> transcoding -> waveform_generating -> published.
    failed is reachable from any non-terminal state.
    """

    PENDING = "pending"
    TRANSCODING = "transcoding"
    WAVEFORM_GENERATING = "waveform_generating"
    PUBLISHED = "published"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ProcessingState.PUBLISHED, ProcessingState.FAILED})


class ChainStatus(StrEnum):
    WAITING = "waiting"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


# Chains holding the per-sample execution slot
ACTIVE_CHAIN_STATUSES = (ChainStatus.QUEUED, ChainStatus.RUNNING)
TERMINAL_CHAIN_STATUSES = (ChainStatus.COMPLETED, ChainStatus.FAILED, ChainStatus.ABANDONED)


class LinkStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DISCARDED = "discarded"


sample_tags = Table(
    "sample_tags",
    Base.metadata,
    Column("sample_pk", Integer, ForeignKey("samples.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_pk", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Tag(Base):
    """Free-form tag, unique by name."""

    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)


class Sample(Base):
    """A user-submitted audio sample and its derived artifacts.

    Artifact paths are logical paths on the public storage disk, except
    source_path which lives on the private local disk.
    """

    __tablename__ = "samples"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Opaque public identifier (used in artifact names and references)
    sample_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Owning user, set at creation and never updated
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Ingestion inputs
    source_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Derived artifacts
    audio_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    waveform_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    visibility: Mapped[str] = mapped_column(
        String(16), nullable=False, default=Visibility.PRIVATE, index=True
    )
    processing_state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ProcessingState.PENDING, index=True
    )

    # Last failure, recorded when processing_state becomes failed
    failure_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    # selectin so detached instances returned by the store carry their tags
    tags: Mapped[list[Tag]] = relationship(secondary=sample_tags, lazy="selectin")

    @property
    def tag_names(self) -> list[str]:
        return sorted(tag.name for tag in self.tags)


class ChainRecord(Base):
    """Durable state of one submitted chain.

    At most one chain per sample is queued/running at any time; later
    submissions wait until it terminates.
    """

    __tablename__ = "chains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    sample_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ChainStatus.WAITING, index=True
    )
    # Position of the link currently dispatched (or to dispatch next)
    current_link: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    link_count: Mapped[int] = mapped_column(Integer, nullable=False)

    # Set by an operator; the in-flight link's result is discarded when it returns
    abandon_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    # Last dispatch/claim/advance; used to detect interrupted chains
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_chains_sample_status", "sample_id", "status"),)


class ChainLinkRecord(Base):
    """One job of a chain and its execution telemetry."""

    __tablename__ = "chain_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chains.chain_id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)

    # Kind-specific payload as JSON string (e.g. source URL)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=LinkStatus.PENDING)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Artifact paths reported on success, as JSON string
    artifacts_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (UniqueConstraint("chain_id", "position", name="uq_chain_link_position"),)
