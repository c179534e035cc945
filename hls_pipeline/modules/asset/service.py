"""Asset state tracker.

The asset record is the only state shared between workers and readers.
Every transition is one UPDATE committed in its own transaction; status and
manifest URL are always written by the same statement, so no reader can see
a completed asset without a URL or a URL on an asset that is not completed.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hls_pipeline.core.logging import log_error, log_info
from hls_pipeline.modules.asset.models import Asset, ProcessingStatus
from hls_pipeline.modules.asset.repository import AssetRepository
from hls_pipeline.modules.transcoding.errors import StateUpdateFailed

logger = logging.getLogger(__name__)


class AssetStateTracker:
    """Applies processing status transitions to asset records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def mark_processing(self, asset_id: int) -> None:
        """Move an asset to ``processing`` and clear its manifest URL.

        Raises:
            StateUpdateFailed: If the asset does not exist or the write fails
        """
        await self._apply(
            asset_id,
            ProcessingStatus.PROCESSING,
            lambda repo: repo.set_processing(asset_id),
        )

    async def mark_completed(self, asset_id: int, manifest_url: str) -> None:
        """Move a processing asset to ``completed`` with its manifest URL.

        Raises:
            StateUpdateFailed: If the asset is not processing or the write fails
        """
        if not manifest_url:
            raise StateUpdateFailed(f"Asset {asset_id}: completed status requires a manifest URL")
        await self._apply(
            asset_id,
            ProcessingStatus.COMPLETED,
            lambda repo: repo.set_completed(asset_id, manifest_url),
            manifest_url=manifest_url,
        )

    async def mark_failed(self, asset_id: int) -> None:
        """Move an asset to ``failed`` and clear its manifest URL.

        A completed asset is left untouched.

        Raises:
            StateUpdateFailed: If no row was updated or the write fails
        """
        await self._apply(
            asset_id,
            ProcessingStatus.FAILED,
            lambda repo: repo.set_failed(asset_id),
        )

    async def get(self, asset_id: int) -> Optional[Asset]:
        async with self.session_factory() as session:
            return await AssetRepository(session).get_by_id(asset_id)

    async def list_pending_videos(self, limit: int = 100) -> list[Asset]:
        async with self.session_factory() as session:
            return await AssetRepository(session).list_pending_videos(limit)

    async def list_stale_processing(self, older_than: datetime, limit: int = 100) -> list[Asset]:
        async with self.session_factory() as session:
            return await AssetRepository(session).list_stale_processing(older_than, limit)

    async def _apply(
        self,
        asset_id: int,
        status: ProcessingStatus,
        write: Callable[[AssetRepository], Awaitable[int]],
        **extra,
    ) -> None:
        try:
            async with self.session_factory() as session:
                rowcount = await write(AssetRepository(session))
                if rowcount != 1:
                    await session.rollback()
                    raise StateUpdateFailed(
                        f"Asset {asset_id}: transition to {status.value} did not apply"
                    )
                await session.commit()
        except SQLAlchemyError as e:
            log_error(logger, "Asset status write failed", exception=e, asset_id=asset_id, status=status.value)
            raise StateUpdateFailed(f"Asset {asset_id}: cannot write {status.value}: {e}") from e

        log_info(logger, "Asset status updated", asset_id=asset_id, status=status.value, **extra)
