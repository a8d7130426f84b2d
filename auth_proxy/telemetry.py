import logging
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import CollectorRegistry, Info
from prometheus_fastapi_instrumentator import Instrumentator

from auth_proxy.config import ProxyConfig

logger = logging.getLogger("uvicorn.error")

_tracer_provider_configured = False


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Every relayed chunk of a proxied body would otherwise become its own span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type")
                in ("http.response.body", "websocket.send", "websocket.receive")
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def configure_tracing(config: ProxyConfig) -> None:
    """Install the process-wide tracer provider, exporting over OTLP when configured."""
    global _tracer_provider_configured
    if _tracer_provider_configured:
        return
    provider = TracerProvider(
        resource=Resource.create({"service.name": config.service_name})
    )
    if config.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=config.otlp_endpoint,
            headers=list(config.otlp_headers) or None,
        )
        provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"[Telemetry] Exporting traces to {config.otlp_endpoint}")
    trace.set_tracer_provider(provider)
    _tracer_provider_configured = True


def instrument_app(app: FastAPI, config: ProxyConfig) -> CollectorRegistry:
    """
    Attach tracing and Prometheus metrics to one application.

    Each app gets its own registry so several apps can live in one process.
    """
    FastAPIInstrumentor.instrument_app(app)

    registry = CollectorRegistry()
    Instrumentator(registry=registry).instrument(app).expose(
        app, endpoint=config.metrics_path, include_in_schema=False
    )
    app_info = Info("fastapi_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": config.service_name, "backend": config.backend_url})
    return registry
