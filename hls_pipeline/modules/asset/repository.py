"""Repository for asset database operations."""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hls_pipeline.core.database import utcnow
from hls_pipeline.modules.asset.models import Asset, AssetType, ProcessingStatus


class AssetRepository:
    """Repository for Asset database operations.

    Status writes are single conditional UPDATE statements that return the
    number of affected rows, so callers can tell whether a guarded
    transition applied.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Asset CRUD ====================

    async def create(
        self,
        asset_name: str,
        source_url: str,
        asset_type: AssetType = AssetType.VIDEO,
        storage_key: Optional[str] = None,
        content_type: Optional[str] = None,
        asset_size: int = 0,
        duration: float = 0.0,
        user_id: Optional[str] = None,
        asset_id: Optional[int] = None,
    ) -> Asset:
        """Create a pending asset."""
        asset = Asset(
            id=asset_id,
            user_id=user_id,
            asset_name=asset_name,
            asset_type=asset_type.value,
            source_url=source_url,
            storage_key=storage_key,
            content_type=content_type,
            asset_size=asset_size,
            duration=duration,
            processing_status=ProcessingStatus.PENDING.value,
        )
        self.session.add(asset)
        await self.session.flush()
        return asset

    async def get_by_id(self, asset_id: int) -> Optional[Asset]:
        result = await self.session.execute(select(Asset).where(Asset.id == asset_id))
        return result.scalar_one_or_none()

    # ==================== Registry reads ====================

    async def list_pending_videos(self, limit: int = 100) -> list[Asset]:
        """Video assets that were never picked up for processing."""
        query = (
            select(Asset)
            .where(
                Asset.processing_status == ProcessingStatus.PENDING.value,
                Asset.asset_type == AssetType.VIDEO.value,
                Asset.manifest_url.is_(None),
            )
            .order_by(Asset.created_at, Asset.id)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_stale_processing(self, older_than: datetime, limit: int = 100) -> list[Asset]:
        """Assets stuck in ``processing`` since before ``older_than``."""
        query = (
            select(Asset)
            .where(
                Asset.processing_status == ProcessingStatus.PROCESSING.value,
                Asset.updated_at < older_than,
            )
            .order_by(Asset.updated_at, Asset.id)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    # ==================== Status transitions ====================

    async def set_processing(self, asset_id: int) -> int:
        stmt = (
            update(Asset)
            .where(Asset.id == asset_id)
            .values(
                processing_status=ProcessingStatus.PROCESSING.value,
                manifest_url=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def set_completed(self, asset_id: int, manifest_url: str) -> int:
        stmt = (
            update(Asset)
            .where(
                Asset.id == asset_id,
                Asset.processing_status == ProcessingStatus.PROCESSING.value,
            )
            .values(
                processing_status=ProcessingStatus.COMPLETED.value,
                manifest_url=manifest_url,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def set_failed(self, asset_id: int) -> int:
        stmt = (
            update(Asset)
            .where(
                Asset.id == asset_id,
                Asset.processing_status != ProcessingStatus.COMPLETED.value,
            )
            .values(
                processing_status=ProcessingStatus.FAILED.value,
                manifest_url=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
