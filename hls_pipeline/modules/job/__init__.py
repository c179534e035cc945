"""Job module: transcode job records, dispatcher and Celery tasks."""

from hls_pipeline.modules.job.models import ACTIVE_STATUSES, CLAIMABLE_STATUSES, JobStatus, TranscodeJob
from hls_pipeline.modules.job.repository import JobRepository
from hls_pipeline.modules.job.schemas import AssetStatusInfo, EnqueueResponse, JobInfo
from hls_pipeline.modules.job.service import (
    RETRYABLE_ERRORS,
    CancelOutcome,
    CeleryJobQueue,
    ExecutionResult,
    JobDispatcher,
    JobOutcome,
    JobQueue,
    SweepSummary,
)
from hls_pipeline.modules.job.tasks import RetryConfig, TranscodeTask, register_tasks

__all__ = [
    # Models
    "TranscodeJob",
    "JobStatus",
    "CLAIMABLE_STATUSES",
    "ACTIVE_STATUSES",
    # Schemas
    "JobInfo",
    "AssetStatusInfo",
    "EnqueueResponse",
    # Repository
    "JobRepository",
    # Service
    "JobDispatcher",
    "JobQueue",
    "CeleryJobQueue",
    "JobOutcome",
    "CancelOutcome",
    "ExecutionResult",
    "SweepSummary",
    "RETRYABLE_ERRORS",
    # Tasks
    "RetryConfig",
    "TranscodeTask",
    "register_tasks",
]
