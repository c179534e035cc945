"""Tests for Celery wiring of the transcode and sweep tasks."""

import uuid
from unittest.mock import MagicMock

from hls_pipeline.core.celery_app import (
    SWEEP_TASK_NAME,
    TRANSCODE_QUEUE,
    TRANSCODE_TASK_NAME,
    create_celery_app,
)
from hls_pipeline.core.config import Settings
from hls_pipeline.modules.job.service import (
    CeleryJobQueue,
    ExecutionResult,
    JobOutcome,
    SweepSummary,
)
from hls_pipeline.modules.job.tasks import register_tasks


def make_app():
    return create_celery_app(Settings(
        _env_file=None,
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        SWEEP_INTERVAL_SECONDS=60.0,
    ))


class TestCeleryApp:
    """Tests for create_celery_app."""

    def test_routes_and_schedule(self) -> None:
        app = make_app()

        assert app.conf.task_default_queue == TRANSCODE_QUEUE
        assert app.conf.task_routes[TRANSCODE_TASK_NAME] == {"queue": TRANSCODE_QUEUE}
        assert app.conf.task_acks_late is True
        assert app.conf.worker_prefetch_multiplier == 1
        schedule = app.conf.beat_schedule["sweep-stuck-assets"]
        assert schedule["task"] == SWEEP_TASK_NAME
        assert schedule["schedule"] == 60.0

    def test_hard_time_limit_outlasts_encode_timeout(self) -> None:
        app = make_app()

        assert app.conf.task_time_limit > 7200
        assert app.conf.broker_transport_options["visibility_timeout"] == 2 * app.conf.task_time_limit


class TestCeleryJobQueue:
    """Tests for publishing deliveries."""

    def test_enqueue_sends_task(self) -> None:
        app = MagicMock()
        job_id = uuid.uuid4()

        CeleryJobQueue(app).enqueue(job_id, countdown=4.0)

        app.send_task.assert_called_once_with(
            TRANSCODE_TASK_NAME,
            args=[str(job_id)],
            countdown=4.0,
            queue=TRANSCODE_QUEUE,
        )

    def test_zero_countdown_is_immediate(self) -> None:
        app = MagicMock()

        CeleryJobQueue(app).enqueue(uuid.uuid4())

        assert app.send_task.call_args.kwargs["countdown"] is None


class TestRegisteredTasks:
    """Tests for the task bodies with a stubbed runtime."""

    def test_transcode_task_reports_outcome(self) -> None:
        job_id = uuid.uuid4()
        runtime = MagicMock()
        runtime.run.return_value = ExecutionResult(
            job_id=job_id,
            outcome=JobOutcome.RETRY_SCHEDULED,
            attempt=1,
            error_type="SourceUnavailable",
            retry_in=1.0,
        )
        tasks = register_tasks(make_app(), lambda: runtime)

        result = tasks[TRANSCODE_TASK_NAME](str(job_id))

        runtime.dispatcher.execute.assert_called_once_with(str(job_id))
        assert result == {
            "job_id": str(job_id),
            "outcome": "retry_scheduled",
            "attempt": 1,
            "manifest_url": None,
            "error_type": "SourceUnavailable",
            "retry_in": 1.0,
        }

    def test_sweep_task_reports_counts(self) -> None:
        runtime = MagicMock()
        runtime.run.return_value = SweepSummary(pending_enqueued=2, assets_failed=1)
        tasks = register_tasks(make_app(), lambda: runtime)

        result = tasks[SWEEP_TASK_NAME]()

        runtime.dispatcher.sweep.assert_called_once_with()
        assert result["pending_enqueued"] == 2
        assert result["assets_failed"] == 1
        assert result["stale_jobs_dead"] == 0
