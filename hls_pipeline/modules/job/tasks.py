"""Celery tasks and retry policy for transcode jobs."""

import logging
import math
from typing import TYPE_CHECKING, Any, Callable

from celery import Celery, Task

from hls_pipeline.core.celery_app import SWEEP_TASK_NAME, TRANSCODE_QUEUE, TRANSCODE_TASK_NAME
from hls_pipeline.core.logging import log_error, log_info

if TYPE_CHECKING:
    from hls_pipeline.runtime import PipelineRuntime

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt using exponential backoff.

        Args:
            attempt: The failed attempt number (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return min(self.initial_delay, self.max_delay)

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            initial_delay=settings.JOB_BACKOFF_BASE_DELAY,
            max_delay=settings.JOB_BACKOFF_MAX_DELAY,
        )


class TranscodeTask(Task):
    """Base task for transcode job deliveries.

    Retries are driven by the job record, not by Celery, so a task failure
    here is only logged. The dispatcher has already written the job and
    asset state before re-raising.
    """
    abstract = True
    max_retries = 0

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        job_id = args[0] if args else kwargs.get("job_id")
        log_error(logger, "Task failed", exception=exc, task_id=task_id, job_id=job_id)


def register_tasks(
    celery_app: Celery,
    runtime_provider: Callable[[], "PipelineRuntime"],
) -> dict[str, Any]:
    """Register the pipeline tasks on a Celery app.

    Args:
        celery_app: Application to register on
        runtime_provider: Returns the worker process runtime

    Returns:
        Registered tasks by name
    """

    @celery_app.task(
        bind=True,
        base=TranscodeTask,
        name=TRANSCODE_TASK_NAME,
        queue=TRANSCODE_QUEUE,
        acks_late=True,
    )
    def transcode_video(self: TranscodeTask, job_id: str) -> dict:
        """Run one delivery of a transcode job.

        Args:
            job_id: UUID of the transcode job

        Returns:
            dict: Outcome of the delivery
        """
        runtime = runtime_provider()
        result = runtime.run(runtime.dispatcher.execute(job_id))
        return {
            "job_id": str(result.job_id),
            "outcome": result.outcome.value,
            "attempt": result.attempt,
            "manifest_url": result.manifest_url,
            "error_type": result.error_type,
            "retry_in": result.retry_in,
        }

    @celery_app.task(name=SWEEP_TASK_NAME)
    def sweep_stuck_assets() -> dict:
        """Periodic repair of stuck jobs and assets.

        Returns:
            dict: Counts of repaired jobs and assets
        """
        runtime = runtime_provider()
        summary = runtime.run(runtime.dispatcher.sweep())
        log_info(logger, "Sweep task finished", requeued=len(summary.job_ids))
        return {
            "stale_jobs_dead": summary.stale_jobs_dead,
            "redelivered_jobs": summary.redelivered_jobs,
            "pending_enqueued": summary.pending_enqueued,
            "stale_assets_requeued": summary.stale_assets_requeued,
            "assets_failed": summary.assets_failed,
        }

    return {
        TRANSCODE_TASK_NAME: transcode_video,
        SWEEP_TASK_NAME: sweep_stuck_assets,
    }
