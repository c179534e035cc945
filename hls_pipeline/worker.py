"""Celery worker entry point.

Start with::

    celery -A hls_pipeline.worker worker -Q hls-video-processing
    celery -A hls_pipeline.worker beat
"""

import logging
import os
from typing import Optional

from celery.signals import worker_init, worker_process_init, worker_process_shutdown
from prometheus_client import start_http_server

from hls_pipeline.core.celery_app import create_celery_app
from hls_pipeline.core.config import get_settings
from hls_pipeline.core.logging import log_info, log_warning, setup_logging
from hls_pipeline.core.metrics import (
    exposition_registry,
    mark_process_dead,
    multiprocess_dir,
    prepare_multiprocess_dir,
    set_app_info,
)
from hls_pipeline.core.tracing import setup_tracing, shutdown_tracing
from hls_pipeline.modules.job.tasks import register_tasks
from hls_pipeline.modules.transcoding.workspace import WorkspaceManager
from hls_pipeline.runtime import PipelineRuntime

logger = logging.getLogger(__name__)

settings = get_settings()
celery_app = create_celery_app(settings)

_runtime: Optional[PipelineRuntime] = None


def get_runtime() -> PipelineRuntime:
    """Return the runtime of the current worker process, creating it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = PipelineRuntime.from_settings(settings, celery_app)
    return _runtime


def _setup_observability() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    setup_tracing(
        service_name="hls-pipeline-worker",
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
    )
    set_app_info(settings.VERSION, settings.ENVIRONMENT)


@worker_init.connect
def on_worker_init(**kwargs) -> None:
    _setup_observability()
    # No task has been accepted yet, so nothing under the root is live
    if settings.WORKSPACE_PURGE_ON_START:
        WorkspaceManager(settings.WORKSPACE_ROOT).purge()
    _start_metrics_server()


def _start_metrics_server() -> None:
    if not settings.METRICS_PORT:
        return
    if multiprocess_dir() is None:
        log_warning(
            logger,
            "PROMETHEUS_MULTIPROC_DIR is not set, job metrics of pool processes will not be exported",
        )
    else:
        prepare_multiprocess_dir()
    start_http_server(settings.METRICS_PORT, registry=exposition_registry())
    log_info(logger, "Metrics endpoint started", port=settings.METRICS_PORT)


@worker_process_init.connect
def on_worker_process_init(**kwargs) -> None:
    global _runtime
    # Forked children must not reuse the parent's loop or connections
    _runtime = None
    _setup_observability()
    get_runtime()


@worker_process_shutdown.connect
def on_worker_process_shutdown(**kwargs) -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None
    shutdown_tracing()
    mark_process_dead(os.getpid())


tasks = register_tasks(celery_app, get_runtime)
