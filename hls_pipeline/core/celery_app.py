"""Celery application configuration."""

from celery import Celery

from hls_pipeline.core.config import Settings

TRANSCODE_QUEUE = "hls-video-processing"
TRANSCODE_TASK_NAME = "hls_pipeline.transcode_video"
SWEEP_TASK_NAME = "hls_pipeline.sweep_stuck_assets"


def create_celery_app(settings: Settings) -> Celery:
    """Create the Celery application for the transcoding worker.

    Args:
        settings: Application settings

    Returns:
        Configured Celery app
    """
    celery_app = Celery(
        "hls_pipeline",
        broker=settings.broker_url,
        backend=settings.result_backend,
    )

    celery_app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_time_limit=settings.task_time_limit,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.WORKER_CONCURRENCY,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_default_queue=TRANSCODE_QUEUE,
        task_routes={
            TRANSCODE_TASK_NAME: {"queue": TRANSCODE_QUEUE},
            SWEEP_TASK_NAME: {"queue": TRANSCODE_QUEUE},
        },
        # Retry countdowns can exceed the Redis default visibility window
        broker_transport_options={"visibility_timeout": settings.task_time_limit * 2},
    )

    celery_app.conf.beat_schedule = {
        "sweep-stuck-assets": {
            "task": SWEEP_TASK_NAME,
            "schedule": settings.SWEEP_INTERVAL_SECONDS,
        },
    }

    return celery_app
