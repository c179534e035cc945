"""Structured logging bound to the running job.

While a job attempt runs, every record carries the job id, asset id and
attempt number from a context variable, so one attempt can be followed
through fetch, encode and publish. Tasks spawned during the attempt inherit
the same context.
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from hls_pipeline.core.tracing import get_span_id, get_trace_id

_job_context: ContextVar[dict] = ContextVar("job_context", default={})

# LogRecord attributes that are never treated as extra fields
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "job", "job_tag"}

NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "botocore", "celery.worker.strategy")


def get_job_context() -> dict:
    """Job fields bound to the current context."""
    return dict(_job_context.get())


def update_job_context(**fields: Any) -> None:
    """Add fields to the job context of the current task."""
    current = dict(_job_context.get())
    current.update({key: value for key, value in fields.items() if value is not None})
    _job_context.set(current)


@contextmanager
def job_log_context(**fields: Any) -> Iterator[None]:
    """Bind job fields to every record logged inside the block."""
    token = _job_context.set({key: value for key, value in fields.items() if value is not None})
    try:
        yield
    finally:
        _job_context.reset(token)


class JobContextFilter(logging.Filter):
    """Copies the bound job fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _job_context.get()
        record.job = context
        record.job_tag = context.get("job_id") or getattr(record, "job_id", "-")
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        job = getattr(record, "job", None)
        if job:
            entry["job"] = job

        trace_id = get_trace_id()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = get_span_id()

        fields = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS
        }
        if fields:
            entry["fields"] = fields

        if record.exc_info and record.exc_info[1] is not None:
            error = record.exc_info[1]
            entry["error"] = {"type": type(error).__name__, "message": str(error)}
            if self.include_stack_trace:
                entry["error"]["stack_trace"] = traceback.format_exception(*record.exc_info)

        return json.dumps(entry, default=str)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all records to stdout through the job context filter.

    Args:
        level: Log level name
        json_format: Emit JSON objects instead of plain text lines
        include_stack_trace: Attach formatted stack traces to error records
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(JobContextFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [job=%(job_tag)s] %(message)s"
        ))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with structured fields and an optional exception.

    Args:
        logger: Logger instance
        message: Error message
        exception: Exception whose traceback is attached
        **extra: Structured fields; must not shadow LogRecord attributes
    """
    logger.error(message, exc_info=exception, extra=extra)


def log_warning(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.warning(message, extra=extra)


def log_info(logger: logging.Logger, message: str, **extra: Any) -> None:
    logger.info(message, extra=extra)
