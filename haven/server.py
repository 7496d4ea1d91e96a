import logging
from typing import Optional, Sequence

import uvicorn
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
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from haven.proxy.forward import ForwardHandler
from haven.proxy.relay import RelayHandler
from haven.routes import build_router
from haven.utils import key_fingerprint
from haven.vars import (
    LOG_LEVEL,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    SERVICE_NAME,
    GatewayConfig,
    load_config,
)

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    A forwarded download emits one span per chunk otherwise.
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


def configure_tracing() -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
    )
    tracer_provider = trace.get_tracer_provider()
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT,
            headers=((OTLP_HEADERS).split(",") if OTLP_HEADERS else None),
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )


def create_app(
    config: Optional[GatewayConfig] = None,
    forward_handler: Optional[ForwardHandler] = None,
    relay_handler: Optional[RelayHandler] = None,
) -> FastAPI:
    """Assemble the gateway application for one configuration."""
    config = config or load_config()
    gateway = FastAPI(title=SERVICE_NAME)

    Instrumentator().instrument(gateway).expose(gateway)
    FastAPIInstrumentor.instrument_app(gateway)

    gateway.state.config = config
    gateway.include_router(build_router(config, forward_handler, relay_handler))

    logger.info(
        f"[Gateway] Forward path {config.forward_path}, relay prefix {config.relay_prefix}, "
        f"static dir {config.static_dir}"
    )
    if config.require_unlock:
        logger.info(
            f"[Gateway] Unlock required, key {key_fingerprint(config.unlock_key)}"
        )
    return gateway


configure_tracing()

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})

app = create_app()


def main():
    config = app.state.config
    uvicorn.run(app, host=config.host, port=config.port, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
