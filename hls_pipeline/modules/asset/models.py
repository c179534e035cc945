"""Asset model.

An asset is created by the upload flow with status ``pending``. The
pipeline only ever changes its processing status and manifest URL, and the
two always change together.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hls_pipeline.core.database import Base, utcnow


class AssetType(str, Enum):
    """Kinds of uploaded assets."""
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"


class ProcessingStatus(str, Enum):
    """HLS processing status of an asset."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Asset(Base):
    """Uploaded media asset."""

    __tablename__ = "assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    asset_name: Mapped[str] = mapped_column(String(255), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(20), nullable=False, default=AssetType.VIDEO.value)

    # Source object
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    asset_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    duration: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Processing state
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value
    )
    manifest_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "(processing_status = 'completed' AND manifest_url IS NOT NULL) OR "
            "(processing_status <> 'completed' AND manifest_url IS NULL)",
            name="ck_assets_manifest_url_iff_completed",
        ),
        Index("ix_assets_status_type", "processing_status", "asset_type"),
        Index("ix_assets_status_updated", "processing_status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<Asset(id={self.id}, type={self.asset_type}, status={self.processing_status})>"

    def is_video(self) -> bool:
        return self.asset_type == AssetType.VIDEO.value

    def is_completed(self) -> bool:
        return self.processing_status == ProcessingStatus.COMPLETED.value
