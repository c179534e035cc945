"""Job dispatcher.

Owns the transcode job state machine: enqueue, exclusive claim, execution
of one attempt, classification of failures into retry or dead, operator
cancellation and the periodic sweep that repairs stuck assets.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Protocol, Sequence, Union

from celery import Celery
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hls_pipeline.core.celery_app import TRANSCODE_QUEUE, TRANSCODE_TASK_NAME
from hls_pipeline.core.database import utcnow
from hls_pipeline.core.logging import job_log_context, log_error, log_info, log_warning, update_job_context
from hls_pipeline.core.metrics import (
    DEAD_JOBS_TOTAL,
    JOB_DURATION_SECONDS,
    JOB_RETRIES_TOTAL,
    JOBS_TOTAL,
    SWEEP_REQUEUED_TOTAL,
)
from hls_pipeline.core.storage import Storage
from hls_pipeline.modules.asset.models import Asset
from hls_pipeline.modules.asset.service import AssetStateTracker
from hls_pipeline.modules.job.models import CLAIMABLE_STATUSES, JobStatus, TranscodeJob
from hls_pipeline.modules.job.repository import JobRepository
from hls_pipeline.modules.job.tasks import RetryConfig
from hls_pipeline.modules.transcoding.abr import QualityVariant, validate_ladder
from hls_pipeline.modules.transcoding.errors import (
    JobCancelled,
    PipelineError,
    PublishFailed,
    SourceUnavailable,
    StateUpdateFailed,
)
from hls_pipeline.modules.transcoding.service import PipelineRequest, TranscodingService

logger = logging.getLogger(__name__)

# Only these errors are retried; everything else is terminal
RETRYABLE_ERRORS = (SourceUnavailable, PublishFailed)

WORKER_LOST = "WorkerLost"
CANCELLED = JobCancelled.__name__
CANCELLED_MESSAGE = "Cancelled by operator"
INTERNAL_ERROR = "InternalError"

JobId = Union[str, uuid.UUID]


class JobQueue(Protocol):
    """Broker side of job delivery."""

    def enqueue(self, job_id: uuid.UUID, countdown: float = 0.0) -> None:
        ...


class CeleryJobQueue:
    """Publishes job deliveries to the transcode queue."""

    def __init__(self, celery_app: Celery):
        self.celery_app = celery_app

    def enqueue(self, job_id: uuid.UUID, countdown: float = 0.0) -> None:
        self.celery_app.send_task(
            TRANSCODE_TASK_NAME,
            args=[str(job_id)],
            countdown=countdown or None,
            queue=TRANSCODE_QUEUE,
        )


class JobOutcome(str, Enum):
    """Result of handling one job delivery."""
    DONE = "done"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    DEFERRED = "deferred"  # another job of the asset is running
    SKIPPED = "skipped"  # duplicate delivery or unknown job


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    ALREADY_FINISHED = "already_finished"
    NOT_FOUND = "not_found"


@dataclass
class ExecutionResult:
    job_id: uuid.UUID
    outcome: JobOutcome
    attempt: int = 0
    manifest_url: Optional[str] = None
    error_type: Optional[str] = None
    retry_in: Optional[float] = None


@dataclass
class SweepSummary:
    """Counts of repairs made by one sweep."""
    stale_jobs_dead: int = 0
    redelivered_jobs: int = 0
    pending_enqueued: int = 0
    stale_assets_requeued: int = 0
    assets_failed: int = 0
    job_ids: list[str] = field(default_factory=list)


class JobDispatcher:
    """Runs transcode jobs and applies their state transitions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        tracker: AssetStateTracker,
        service: TranscodingService,
        storage: Storage,
        retry_config: RetryConfig,
        default_ladder: Sequence[QualityVariant],
        cancel_poll_interval: float = 2.0,
        busy_retry_delay: float = 30.0,
        stale_after_seconds: float = 3 * 3600,
        sweep_batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.tracker = tracker
        self.service = service
        self.storage = storage
        self.retry_config = retry_config
        self.default_ladder = list(default_ladder)
        self.cancel_poll_interval = cancel_poll_interval
        self.busy_retry_delay = busy_retry_delay
        self.stale_after_seconds = stale_after_seconds
        self.sweep_batch_size = sweep_batch_size

    # ==================== Enqueue ====================

    async def enqueue(
        self,
        asset_id: int,
        source_key: str,
        ladder: Optional[Sequence[QualityVariant]] = None,
        max_attempts: Optional[int] = None,
    ) -> TranscodeJob:
        """Create a queued job for an asset and hand it to the broker.

        The ladder is stored on the job so every attempt encodes the same
        variants even if configuration changes in between.

        Args:
            asset_id: Asset to package
            source_key: Storage key of the uploaded source
            ladder: Quality ladder (defaults to the configured ladder)
            max_attempts: Attempt limit (defaults to the retry config)

        Returns:
            The created job
        """
        variants = list(ladder) if ladder is not None else self.default_ladder
        is_valid, errors = validate_ladder(variants)
        if not is_valid:
            raise ValueError(f"Invalid quality ladder: {'; '.join(errors)}")

        async with self.session_factory() as session:
            job = await JobRepository(session).create(
                asset_id=asset_id,
                source_key=source_key,
                ladder=[variant.model_dump() for variant in variants],
                max_attempts=max_attempts or self.retry_config.max_attempts,
                backoff_base_delay=self.retry_config.initial_delay,
            )
            await session.commit()

        await self._publish(job.id)
        log_info(logger, "Job enqueued", job_id=str(job.id), asset_id=asset_id, source_key=source_key)
        return job

    # ==================== Execution ====================

    async def execute(self, job_id: JobId) -> ExecutionResult:
        """Handle one delivery of a job.

        Args:
            job_id: Job identifier from the broker message

        Returns:
            ExecutionResult describing what happened to the job
        """
        job_uuid = uuid.UUID(str(job_id))
        with job_log_context(job_id=str(job_uuid)):
            return await self._execute(job_uuid)

    async def _execute(self, job_id: uuid.UUID) -> ExecutionResult:
        async with self.session_factory() as session:
            repo = JobRepository(session)
            claimed = await repo.claim(job_id)
            await session.commit()
            job = await repo.get_by_id(job_id)

        if not claimed:
            return await self._handle_unclaimed(job_id, job)

        started = time.monotonic()
        update_job_context(asset_id=job.asset_id, attempt=job.attempts)
        log_info(logger, "Job attempt started", job_id=str(job_id), asset_id=job.asset_id, attempt=job.attempts)

        try:
            result = await self._run_attempt(job)
        except Exception as e:
            log_error(logger, "Job attempt crashed", exception=e, job_id=str(job_id))
            await self._fail_terminal(job, INTERNAL_ERROR, str(e))
            JOBS_TOTAL.labels(outcome=JobOutcome.DEAD.value).inc()
            raise

        elapsed = time.monotonic() - started
        JOBS_TOTAL.labels(outcome=result.outcome.value).inc()
        JOB_DURATION_SECONDS.labels(outcome=result.outcome.value).observe(elapsed)
        return result

    async def _run_attempt(self, job: TranscodeJob) -> ExecutionResult:
        try:
            await self.tracker.mark_processing(job.asset_id)
        except StateUpdateFailed as e:
            return await self._handle_failure(job, e)

        request = PipelineRequest(
            job_id=str(job.id),
            attempt=job.attempts,
            asset_id=job.asset_id,
            source_key=job.source_key,
            ladder=[QualityVariant.model_validate(v) for v in job.ladder] or self.default_ladder,
        )

        cancel_event = asyncio.Event()
        watcher = asyncio.ensure_future(self._watch_cancel(job.id, cancel_event))
        try:
            result = await self.service.run(request, cancel_event)
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

        if not result.success:
            return await self._handle_failure(job, result.error)

        try:
            await self.tracker.mark_completed(job.asset_id, result.manifest_url)
        except StateUpdateFailed as e:
            return await self._handle_failure(job, e)

        async with self.session_factory() as session:
            await JobRepository(session).mark_done(job.id)
            await session.commit()

        log_info(
            logger,
            "Job done",
            job_id=str(job.id),
            asset_id=job.asset_id,
            manifest_url=result.manifest_url,
        )
        return ExecutionResult(
            job_id=job.id,
            outcome=JobOutcome.DONE,
            attempt=job.attempts,
            manifest_url=result.manifest_url,
        )

    async def _handle_unclaimed(self, job_id: uuid.UUID, job: Optional[TranscodeJob]) -> ExecutionResult:
        if job is None:
            log_warning(logger, "Delivery for unknown job", job_id=str(job_id))
            return ExecutionResult(job_id=job_id, outcome=JobOutcome.SKIPPED)

        if job.status in CLAIMABLE_STATUSES and job.cancel_requested:
            # Cancelled while running, then handed back for retry
            if await self._fail_terminal(job, CANCELLED, CANCELLED_MESSAGE, from_statuses=CLAIMABLE_STATUSES):
                return ExecutionResult(
                    job_id=job.id, outcome=JobOutcome.DEAD, attempt=job.attempts, error_type=CANCELLED,
                )
            return ExecutionResult(job_id=job.id, outcome=JobOutcome.SKIPPED, attempt=job.attempts)

        if job.status in CLAIMABLE_STATUSES:
            if job.can_retry():
                # Another job of the same asset holds the claim
                await self._publish(job.id, self.busy_retry_delay)
                log_info(
                    logger,
                    "Asset busy, job deferred",
                    job_id=str(job.id),
                    asset_id=job.asset_id,
                    retry_in=self.busy_retry_delay,
                )
                return ExecutionResult(
                    job_id=job.id,
                    outcome=JobOutcome.DEFERRED,
                    attempt=job.attempts,
                    retry_in=self.busy_retry_delay,
                )
            killed = await self._fail_terminal(
                job,
                job.error_type or "AttemptsExhausted",
                job.error or "No attempts left",
                from_statuses=CLAIMABLE_STATUSES,
            )
            outcome = JobOutcome.DEAD if killed else JobOutcome.SKIPPED
            return ExecutionResult(job_id=job.id, outcome=outcome, attempt=job.attempts)

        log_info(logger, "Duplicate delivery skipped", job_id=str(job.id), status=job.status)
        return ExecutionResult(job_id=job.id, outcome=JobOutcome.SKIPPED, attempt=job.attempts)

    async def _handle_failure(self, job: TranscodeJob, error: PipelineError) -> ExecutionResult:
        """Classify a failed attempt as retry or dead."""
        if isinstance(error, RETRYABLE_ERRORS) and job.can_retry():
            delay = self._backoff_delay(job)
            async with self.session_factory() as session:
                rows = await JobRepository(session).schedule_retry(
                    job.id,
                    error=error.message,
                    error_type=error.error_type,
                    next_retry_at=utcnow() + timedelta(seconds=delay),
                )
                await session.commit()

            if rows == 1:
                await self._publish(job.id, delay)
                JOB_RETRIES_TOTAL.labels(error_type=error.error_type).inc()
                log_warning(
                    logger,
                    "Job attempt failed, retry scheduled",
                    job_id=str(job.id),
                    asset_id=job.asset_id,
                    attempt=job.attempts,
                    error_type=error.error_type,
                    error_message=error.message,
                    retry_in=delay,
                )
                return ExecutionResult(
                    job_id=job.id,
                    outcome=JobOutcome.RETRY_SCHEDULED,
                    attempt=job.attempts,
                    error_type=error.error_type,
                    retry_in=delay,
                )
            async with self.session_factory() as session:
                current = await JobRepository(session).get_by_id(job.id)
            if current is not None and current.status == JobStatus.RUNNING.value and current.cancel_requested:
                log_info(logger, "Retry dropped, cancellation pending", job_id=str(job.id))
                error = JobCancelled(CANCELLED_MESSAGE)
            else:
                log_warning(logger, "Job changed while failing, retry not scheduled", job_id=str(job.id))
                return ExecutionResult(
                    job_id=job.id,
                    outcome=JobOutcome.SKIPPED,
                    attempt=job.attempts,
                    error_type=error.error_type,
                )

        killed = await self._fail_terminal(job, error.error_type, error.message)
        return ExecutionResult(
            job_id=job.id,
            outcome=JobOutcome.DEAD if killed else JobOutcome.SKIPPED,
            attempt=job.attempts,
            error_type=error.error_type,
        )

    async def _fail_terminal(
        self,
        job: TranscodeJob,
        error_type: str,
        message: str,
        from_statuses: Sequence[str] = (JobStatus.RUNNING.value,),
    ) -> bool:
        """Move a job to dead and pin its asset to failed.

        Returns:
            False if the job had already left ``from_statuses``; the asset is
            then left to whichever path moved the job.
        """
        async with self.session_factory() as session:
            rows = await JobRepository(session).mark_dead(
                job.id,
                error=message,
                error_type=error_type,
                from_statuses=from_statuses,
            )
            await session.commit()

        if rows == 0:
            log_info(logger, "Job already moved on, not marked dead", job_id=str(job.id), error_type=error_type)
            return False

        DEAD_JOBS_TOTAL.labels(error_type=error_type).inc()
        log_error(
            logger,
            "Job dead",
            job_id=str(job.id),
            asset_id=job.asset_id,
            attempt=job.attempts,
            error_type=error_type,
            error_message=message,
        )
        try:
            await self.tracker.mark_failed(job.asset_id)
        except StateUpdateFailed as e:
            # Left in processing, the sweep picks the asset up again
            log_error(logger, "Could not mark asset failed", exception=e, asset_id=job.asset_id)
        return True

    def _backoff_delay(self, job: TranscodeJob) -> float:
        config = RetryConfig(
            max_attempts=job.max_attempts,
            initial_delay=job.backoff_base_delay,
            max_delay=self.retry_config.max_delay,
            backoff_multiplier=self.retry_config.backoff_multiplier,
        )
        return config.calculate_delay(job.attempts)

    async def _watch_cancel(self, job_id: uuid.UUID, cancel_event: asyncio.Event) -> None:
        while not cancel_event.is_set():
            await asyncio.sleep(self.cancel_poll_interval)
            try:
                async with self.session_factory() as session:
                    if await JobRepository(session).is_cancel_requested(job_id):
                        log_info(logger, "Cancellation requested", job_id=str(job_id))
                        cancel_event.set()
            except SQLAlchemyError as e:
                log_warning(logger, "Cancel poll failed", job_id=str(job_id), reason=str(e))

    async def _publish(self, job_id: uuid.UUID, countdown: float = 0.0) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.queue.enqueue, job_id, countdown)

    # ==================== Cancellation ====================

    async def cancel(self, job_id: JobId) -> CancelOutcome:
        """Cancel a job.

        A job waiting for delivery goes straight to dead and its asset to
        failed. A running job is flagged; the worker running it stops at the
        next check and kills any in-flight encoder.
        """
        job_uuid = uuid.UUID(str(job_id))
        async with self.session_factory() as session:
            repo = JobRepository(session)
            job = await repo.get_by_id(job_uuid)
            if job is None:
                return CancelOutcome.NOT_FOUND

            if job.status == JobStatus.RUNNING.value:
                rows = await repo.request_cancel(job_uuid)
                await session.commit()
                if rows == 1:
                    log_info(logger, "Cancellation requested for running job", job_id=str(job_uuid))
                    return CancelOutcome.CANCEL_REQUESTED
                return CancelOutcome.ALREADY_FINISHED

            if job.is_terminal():
                return CancelOutcome.ALREADY_FINISHED

        if await self._fail_terminal(job, CANCELLED, CANCELLED_MESSAGE, from_statuses=CLAIMABLE_STATUSES):
            return CancelOutcome.CANCELLED

        # Claimed by a worker since the status was read
        async with self.session_factory() as session:
            rows = await JobRepository(session).request_cancel(job_uuid)
            await session.commit()
        if rows == 1:
            log_info(logger, "Cancellation requested for running job", job_id=str(job_uuid))
            return CancelOutcome.CANCEL_REQUESTED
        return CancelOutcome.ALREADY_FINISHED

    # ==================== Sweep ====================

    async def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """Repair jobs and assets that stopped making progress.

        1. Running jobs older than the stale timeout are marked dead.
        2. Queued or retry-scheduled jobs past due are delivered again.
        3. Pending video assets without an active job are enqueued.
        4. Processing assets older than the stale timeout without an active
           job are enqueued again, unless their workers were lost too often.
        """
        now = now or utcnow()
        threshold = now - timedelta(seconds=self.stale_after_seconds)
        summary = SweepSummary()

        async with self.session_factory() as session:
            repo = JobRepository(session)
            stale_running = await repo.find_stale_running(threshold, self.sweep_batch_size)
            stale_waiting = await repo.find_stale_waiting(threshold, self.sweep_batch_size)

        for job in stale_running:
            async with self.session_factory() as session:
                rows = await JobRepository(session).mark_dead(
                    job.id,
                    error="Attempt exceeded the stale timeout; worker presumed lost",
                    error_type=WORKER_LOST,
                )
                await session.commit()
            if rows == 1:
                summary.stale_jobs_dead += 1
                DEAD_JOBS_TOTAL.labels(error_type=WORKER_LOST).inc()
                log_warning(logger, "Stale running job marked dead", job_id=str(job.id), asset_id=job.asset_id)

        for job in stale_waiting:
            await self._publish(job.id)
            summary.redelivered_jobs += 1
            SWEEP_REQUEUED_TOTAL.labels(reason="redelivered").inc()

        for asset in await self.tracker.list_pending_videos(self.sweep_batch_size):
            job = await self._requeue_asset(asset, summary)
            if job is not None:
                summary.pending_enqueued += 1
                SWEEP_REQUEUED_TOTAL.labels(reason="pending").inc()

        for asset in await self.tracker.list_stale_processing(threshold, self.sweep_batch_size):
            job = await self._requeue_asset(asset, summary)
            if job is not None:
                summary.stale_assets_requeued += 1
                SWEEP_REQUEUED_TOTAL.labels(reason="stale_processing").inc()

        log_info(
            logger,
            "Sweep finished",
            stale_jobs_dead=summary.stale_jobs_dead,
            redelivered_jobs=summary.redelivered_jobs,
            pending_enqueued=summary.pending_enqueued,
            stale_assets_requeued=summary.stale_assets_requeued,
            assets_failed=summary.assets_failed,
        )
        return summary

    async def _requeue_asset(self, asset: Asset, summary: SweepSummary) -> Optional[TranscodeJob]:
        async with self.session_factory() as session:
            repo = JobRepository(session)
            if await repo.has_active_job(asset.id):
                return None
            workers_lost = await repo.count_failures(asset.id, WORKER_LOST)

        if workers_lost >= self.retry_config.max_attempts:
            log_error(logger, "Asset repeatedly lost its worker, giving up", asset_id=asset.id)
            await self._mark_asset_failed(asset, summary)
            return None

        source_key = asset.storage_key or self.storage.storage_key_from_url(asset.source_url)
        if not source_key:
            log_error(logger, "Cannot derive source key for asset", asset_id=asset.id, source_url=asset.source_url)
            await self._mark_asset_failed(asset, summary)
            return None

        job = await self.enqueue(asset.id, source_key)
        summary.job_ids.append(str(job.id))
        return job

    async def _mark_asset_failed(self, asset: Asset, summary: SweepSummary) -> None:
        try:
            await self.tracker.mark_failed(asset.id)
            summary.assets_failed += 1
        except StateUpdateFailed as e:
            log_error(logger, "Could not mark asset failed", exception=e, asset_id=asset.id)
