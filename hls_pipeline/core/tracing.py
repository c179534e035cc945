"""OpenTelemetry spans for pipeline stages.

A job attempt runs inside a ``transcode.job`` span; fetch, each variant
encode and publish get child spans. Before ``setup_tracing`` runs, spans
come from the no-op global tracer.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

SPAN_PREFIX = "transcode"

_provider: Optional[TracerProvider] = None
_tracer: Optional[trace.Tracer] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Install a tracer provider for this process.

    Spans are exported over OTLP when an endpoint is configured and the
    exporter package is installed.

    Args:
        service_name: Reported service name
        service_version: Reported service version
        environment: Deployment environment attribute
        otlp_endpoint: OTLP gRPC endpoint
        enable_console_export: Also print finished spans

    Returns:
        The pipeline tracer
    """
    global _provider, _tracer

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))

    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("OTLP exporter not installed, spans will not be exported")
        else:
            _provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    # Forked worker processes build their own provider; the global one is only set once
    trace.set_tracer_provider(_provider)
    _tracer = _provider.get_tracer("hls_pipeline", service_version)
    logger.info("Tracing initialized", extra={"service": service_name, "otlp": bool(otlp_endpoint)})
    return _tracer


def get_tracer() -> trace.Tracer:
    return _tracer or trace.get_tracer("hls_pipeline")


def _span_context() -> Optional[trace.SpanContext]:
    context = trace.get_current_span().get_span_context()
    return context if context.is_valid else None


def get_trace_id() -> Optional[str]:
    context = _span_context()
    return format(context.trace_id, "032x") if context else None


def get_span_id() -> Optional[str]:
    context = _span_context()
    return format(context.span_id, "016x") if context else None


@contextmanager
def create_span(name: str, attributes: Optional[dict[str, Any]] = None) -> Iterator[Span]:
    """Run a block inside a child span of the current one.

    ``None`` attribute values are dropped, since OpenTelemetry rejects them.

    Args:
        name: Span name, e.g. ``transcode.fetch``
        attributes: Span attributes
    """
    clean = {key: value for key, value in (attributes or {}).items() if value is not None}
    with get_tracer().start_as_current_span(name, attributes=clean) as span:
        yield span


def record_exception(exception: BaseException, attributes: Optional[dict[str, Any]] = None) -> None:
    """Attach an error to the current span and mark the span failed."""
    span = trace.get_current_span()
    error_type = getattr(exception, "error_type", type(exception).__name__)
    span.set_attribute(f"{SPAN_PREFIX}.error_type", error_type)
    span.record_exception(exception, attributes=attributes)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans and drop the provider."""
    global _provider, _tracer
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None
