# ─────────────────────────────────────────────────────────────────────────────
# Tracing — optional OpenTelemetry setup, selected by OTEL_EXPORTER
# ─────────────────────────────────────────────────────────────────────────────
#   OTEL_EXPORTER=console → spans printed to stdout
#   OTEL_EXPORTER=gcp     → Cloud Trace (needs the `gcp` extra installed)
#   unset                 → no provider; spans are no-ops
# ─────────────────────────────────────────────────────────────────────────────

from collections.abc import Callable

import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter

logger = structlog.get_logger(__name__)


def _cloud_trace_exporter() -> SpanExporter | None:
    try:
        from opentelemetry.exporter.cloud_trace import CloudTraceSpanExporter
    except ImportError:
        logger.warning("otel_exporter_unavailable", exporter="gcp", hint="pip install '.[gcp]'")
        return None
    return CloudTraceSpanExporter()  # type: ignore[no-untyped-call]


_EXPORTERS: dict[str, Callable[[], SpanExporter | None]] = {
    "console": ConsoleSpanExporter,
    "gcp": _cloud_trace_exporter,
}


def configure_tracing(exporter_name: str) -> TracerProvider | None:
    """Install a global TracerProvider for the named exporter.

    Returns the provider so the lifespan can flush it on shutdown, or None
    when tracing stays off.
    """
    if not exporter_name:
        return None
    factory = _EXPORTERS.get(exporter_name.strip().lower())
    if factory is None:
        logger.warning("otel_exporter_unknown", exporter=exporter_name)
        return None
    exporter = factory()
    if exporter is None:
        return None

    provider = TracerProvider()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    logger.info("otel_configured", exporter=exporter_name)
    return provider
