"""Transcode job model.

Each job is one request to package an asset. It survives as an audit row
after reaching a terminal status.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hls_pipeline.core.database import Base, utcnow


class JobStatus(str, Enum):
    """Transcode job status.

    ``queued -> running -> {done | retry_scheduled | dead}`` and
    ``retry_scheduled -> running``.
    """
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"


CLAIMABLE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRY_SCHEDULED.value)
ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value, JobStatus.RETRY_SCHEDULED.value)


class TranscodeJob(Base):
    """Job that packages one asset into HLS."""

    __tablename__ = "transcode_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True
    )
    source_key: Mapped[str] = mapped_column(String(1024), nullable=False)

    # Ordered quality ladder, serialized QualityVariant values
    ladder: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value, index=True
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_base_delay: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Last error
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transcode_jobs_asset_status", "asset_id", "status"),
        Index("ix_transcode_jobs_status_started", "status", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<TranscodeJob(id={self.id}, asset={self.asset_id}, status={self.status})>"

    def is_terminal(self) -> bool:
        return self.status in (JobStatus.DONE.value, JobStatus.DEAD.value)

    def can_retry(self) -> bool:
        """Check if another attempt is allowed."""
        return self.attempts < self.max_attempts
