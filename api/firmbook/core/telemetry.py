from __future__ import annotations

import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from firmbook.core.config import Settings

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


def configure_api_logging() -> None:
    """Stamp every log record with the current trace and span ids."""
    if logging.getLogRecordFactory() is _BASE_LOG_RECORD_FACTORY:
        logging.setLogRecordFactory(_correlated_record)
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s",
    )


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TracerProvider | None:
    if not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    # Headers and the remaining OTLP options come from the standard OTEL_* variables.
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint))
        )
    else:
        logging.getLogger(__name__).info("no OTLP endpoint; spans stay local service=%s", settings.otel_service_name)
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return provider


def shutdown_api_telemetry(app: FastAPI, provider: TracerProvider) -> None:
    FastAPIInstrumentor.uninstrument_app(app)
    _HTTPX_INSTRUMENTOR.uninstrument()
    provider.force_flush()
    provider.shutdown()


def _correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
    record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
    context = trace.get_current_span().get_span_context()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
    record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
    return record
