"""Prometheus metrics for the transcoding worker.

Tracks job outcomes, retry volume, encode timings, published objects and
workspace usage.

Celery prefork children do the work, so with ``PROMETHEUS_MULTIPROC_DIR``
set every child writes its values to files in that directory and the
exposition registry aggregates them. Without it only the serving process's
own values are visible.
"""

import os
from pathlib import Path
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

MULTIPROC_DIR_ENV = "PROMETHEUS_MULTIPROC_DIR"

# Live metrics of this process
REGISTRY = CollectorRegistry()


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "hls_pipeline_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Job Metrics
# ============================================
JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Total number of transcode job attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "Transcode job attempt duration in seconds",
    ["outcome"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
    registry=REGISTRY,
)

JOB_RETRIES_TOTAL = Counter(
    "transcode_job_retries_total",
    "Number of job retries scheduled by error type",
    ["error_type"],
    registry=REGISTRY,
)

DEAD_JOBS_TOTAL = Counter(
    "transcode_dead_jobs_total",
    "Number of jobs moved to dead by error type",
    ["error_type"],
    registry=REGISTRY,
)

SWEEP_REQUEUED_TOTAL = Counter(
    "transcode_sweep_requeued_total",
    "Assets re-enqueued by the maintenance sweep",
    ["reason"],
    registry=REGISTRY,
)


# ============================================
# Stage Metrics
# ============================================
VARIANT_DURATION_SECONDS = Histogram(
    "transcode_variant_duration_seconds",
    "Duration of a single variant encode in seconds",
    ["variant", "status"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

FETCH_BYTES_TOTAL = Counter(
    "transcode_fetch_bytes_total",
    "Bytes downloaded from source storage",
    registry=REGISTRY,
)

PUBLISHED_OBJECTS_TOTAL = Counter(
    "transcode_published_objects_total",
    "Objects uploaded to storage by kind",
    ["kind"],
    registry=REGISTRY,
)

WORKSPACES_ACTIVE = Gauge(
    "transcode_workspaces_active",
    "Number of workspaces currently allocated",
    multiprocess_mode="livesum",
    registry=REGISTRY,
)


def multiprocess_dir() -> Optional[str]:
    return os.environ.get(MULTIPROC_DIR_ENV) or None


def exposition_registry() -> CollectorRegistry:
    """Registry to serve over HTTP.

    In multiprocess mode this is a fresh registry holding only the
    collector over the shared directory, so no series is exported twice.
    """
    path = multiprocess_dir()
    if path is None:
        return REGISTRY
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry, path=path)
    return registry


def prepare_multiprocess_dir() -> int:
    """Remove value files left by a previous worker run.

    Returns:
        Number of removed files
    """
    path = multiprocess_dir()
    if path is None:
        return 0
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    removed = 0
    for stale in directory.glob("*.db"):
        stale.unlink()
        removed += 1
    return removed


def mark_process_dead(pid: int) -> None:
    """Drop the live gauge files of an exited worker process."""
    if multiprocess_dir() is not None:
        multiprocess.mark_process_dead(pid)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(exposition_registry())


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
