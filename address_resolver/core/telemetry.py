"""Tracing and log correlation for the API, the chunk worker and the backfill CLI.

Each process gets its own service name (``<otel_service_name>-<role>``) so resolutions
started by an HTTP request and those run from the durable queue can be told apart.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from address_resolver.core.config import Settings
from address_resolver.pipeline.types import ResolutionResult

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
EMPTY_TRACE_ID = "0" * 32
EMPTY_SPAN_ID = "0" * 16

logger = logging.getLogger(__name__)

_httpx_instrumentor = HTTPXClientInstrumentor()
_base_record_factory = logging.getLogRecordFactory()


@dataclass(slots=True)
class TelemetryRuntime:
    service_name: str
    provider: TracerProvider | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def service_name_for(settings: Settings, role: str | None) -> str:
    if not role:
        return settings.otel_service_name
    return f"{settings.otel_service_name}-{role}"


def configure_logging(level: int = logging.INFO) -> None:
    install_log_correlation()
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, service_suffix: str | None = None) -> TelemetryRuntime:
    runtime = TelemetryRuntime(service_name=service_name_for(settings, service_suffix))
    if not settings.otel_enabled:
        return runtime

    if settings.otel_log_correlation:
        install_log_correlation()

    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: runtime.service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    exporter = build_exporter(settings)
    if exporter is None:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", runtime.service_name)
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        # registry, partner and listing calls all go through httpx
        _httpx_instrumentor.instrument(tracer_provider=provider)
    runtime.provider = provider
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()
    runtime.provider = None


def annotate_resolution(span: trace.Span, result: ResolutionResult) -> None:
    """Copy the outcome of one resolution onto its span."""
    span.set_attribute("resolution.success", result.success)
    span.set_attribute("resolution.source_tag", result.source_tag.value)
    span.set_attribute("resolution.confidence", result.confidence)
    span.set_attribute("resolution.failed_steps", len(result.errors))
    if result.strategy is not None:
        span.set_attribute("resolution.strategy", result.strategy.value)
    step = result.metadata.get("step")
    if step:
        span.set_attribute("resolution.step", str(step))


def build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        return None
    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or with an empty key are dropped."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def install_log_correlation() -> None:
    if getattr(logging.getLogRecordFactory(), "adds_trace_context", False):
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _base_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else EMPTY_SPAN_ID
        return record

    record_factory.adds_trace_context = True  # type: ignore[attr-defined]
    logging.setLogRecordFactory(record_factory)
