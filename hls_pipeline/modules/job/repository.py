"""Repository for transcode job database operations."""

import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import ColumnElement, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from hls_pipeline.core.database import utcnow
from hls_pipeline.modules.asset.models import Asset
from hls_pipeline.modules.job.models import (
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    JobStatus,
    TranscodeJob,
)


class JobRepository:
    """Repository for TranscodeJob database operations.

    Transition methods are single guarded UPDATE statements returning the
    affected row count; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Job CRUD ====================

    async def create(
        self,
        asset_id: int,
        source_key: str,
        ladder: list[dict],
        max_attempts: int = 3,
        backoff_base_delay: float = 1.0,
    ) -> TranscodeJob:
        """Create a queued job with no attempts made."""
        job = TranscodeJob(
            asset_id=asset_id,
            source_key=source_key,
            ladder=ladder,
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=max_attempts,
            backoff_base_delay=backoff_base_delay,
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: uuid.UUID) -> Optional[TranscodeJob]:
        result = await self.session.execute(select(TranscodeJob).where(TranscodeJob.id == job_id))
        return result.scalar_one_or_none()

    async def latest_for_asset(self, asset_id: int) -> Optional[TranscodeJob]:
        query = (
            select(TranscodeJob)
            .where(TranscodeJob.asset_id == asset_id)
            .order_by(TranscodeJob.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def has_active_job(self, asset_id: int) -> bool:
        query = (
            select(TranscodeJob.id)
            .where(
                TranscodeJob.asset_id == asset_id,
                TranscodeJob.status.in_(ACTIVE_STATUSES),
            )
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.first() is not None

    async def find_stale_running(self, older_than: datetime, limit: int = 100) -> list[TranscodeJob]:
        """Running jobs whose current attempt started before ``older_than``."""
        query = (
            select(TranscodeJob)
            .where(
                TranscodeJob.status == JobStatus.RUNNING.value,
                TranscodeJob.started_at < older_than,
            )
            .order_by(TranscodeJob.started_at)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def find_stale_waiting(self, older_than: datetime, limit: int = 100) -> list[TranscodeJob]:
        """Queued or retry-scheduled jobs whose delivery is overdue."""
        query = (
            select(TranscodeJob)
            .where(
                or_(
                    and_(
                        TranscodeJob.status == JobStatus.QUEUED.value,
                        TranscodeJob.updated_at < older_than,
                    ),
                    and_(
                        TranscodeJob.status == JobStatus.RETRY_SCHEDULED.value,
                        TranscodeJob.next_retry_at < older_than,
                    ),
                )
            )
            .order_by(TranscodeJob.updated_at)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_failures(self, asset_id: int, error_type: str) -> int:
        query = select(func.count(TranscodeJob.id)).where(
            TranscodeJob.asset_id == asset_id,
            TranscodeJob.status == JobStatus.DEAD.value,
            TranscodeJob.error_type == error_type,
        )
        result = await self.session.execute(query)
        return result.scalar_one()

    async def is_cancel_requested(self, job_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            select(TranscodeJob.cancel_requested).where(TranscodeJob.id == job_id)
        )
        return bool(result.scalar_one_or_none())

    # ==================== Transitions ====================

    async def claim(self, job_id: uuid.UUID) -> int:
        """Claim a job for execution and count the attempt.

        The claim applies only if the job is queued or scheduled for retry,
        has attempts left, and no other job of the same asset is running.
        The asset row is locked first so concurrent claims for one asset
        are serialized.

        Returns:
            Number of claimed rows (0 or 1)
        """
        asset_id = (
            await self.session.execute(
                select(TranscodeJob.asset_id).where(TranscodeJob.id == job_id)
            )
        ).scalar_one_or_none()
        if asset_id is None:
            return 0

        await self.session.execute(select(Asset.id).where(Asset.id == asset_id).with_for_update())

        sibling = aliased(TranscodeJob)
        running_sibling = (
            select(sibling.id)
            .where(
                sibling.asset_id == asset_id,
                sibling.id != job_id,
                sibling.status == JobStatus.RUNNING.value,
            )
            .exists()
        )
        now = utcnow()
        stmt = (
            update(TranscodeJob)
            .where(
                TranscodeJob.id == job_id,
                TranscodeJob.status.in_(CLAIMABLE_STATUSES),
                TranscodeJob.attempts < TranscodeJob.max_attempts,
                TranscodeJob.cancel_requested.is_(False),
                ~running_sibling,
            )
            .values(
                status=JobStatus.RUNNING.value,
                attempts=TranscodeJob.attempts + 1,
                started_at=now,
                next_retry_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def mark_done(self, job_id: uuid.UUID) -> int:
        now = utcnow()
        return await self._transition(
            job_id,
            (JobStatus.RUNNING.value,),
            status=JobStatus.DONE.value,
            error=None,
            error_type=None,
            completed_at=now,
            updated_at=now,
        )

    async def schedule_retry(
        self,
        job_id: uuid.UUID,
        error: str,
        error_type: str,
        next_retry_at: datetime,
    ) -> int:
        """Move a running job to retry_scheduled unless a cancel is pending."""
        return await self._transition(
            job_id,
            (JobStatus.RUNNING.value,),
            TranscodeJob.cancel_requested.is_(False),
            status=JobStatus.RETRY_SCHEDULED.value,
            error=error,
            error_type=error_type,
            next_retry_at=next_retry_at,
            updated_at=utcnow(),
        )

    async def mark_dead(
        self,
        job_id: uuid.UUID,
        error: str,
        error_type: str,
        from_statuses: Iterable[str] = (JobStatus.RUNNING.value,),
    ) -> int:
        now = utcnow()
        return await self._transition(
            job_id,
            tuple(from_statuses),
            status=JobStatus.DEAD.value,
            error=error,
            error_type=error_type,
            next_retry_at=None,
            completed_at=now,
            updated_at=now,
        )

    async def request_cancel(self, job_id: uuid.UUID) -> int:
        return await self._transition(
            job_id,
            (JobStatus.RUNNING.value,),
            cancel_requested=True,
            updated_at=utcnow(),
        )

    async def _transition(
        self,
        job_id: uuid.UUID,
        from_statuses: tuple[str, ...],
        *conditions: ColumnElement[bool],
        **values,
    ) -> int:
        stmt = (
            update(TranscodeJob)
            .where(TranscodeJob.id == job_id, TranscodeJob.status.in_(from_statuses), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount
