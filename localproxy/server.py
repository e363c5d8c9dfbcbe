from typing import Optional, Sequence

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
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

from localproxy import __version__
from localproxy.config import ProxyConfig
from localproxy.forward.route import (
    AbsoluteFormMiddleware,
    catch_all_router,
    forward_router,
)
from localproxy.routes import router
from localproxy.system_proxy import SystemProxyOrchestrator
from localproxy.transactions import TransactionCaptureMiddleware, TransactionStore
from localproxy.vars import CONTROL_PREFIX, OTLP_ENDPOINT, OTLP_HEADERS, SERVICE_NAME

_tracing_configured = False


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that drops the per-chunk ASGI send/receive spans.
    Proxied bodies would otherwise produce one span per chunk.
    """

    NOISY_EVENTS = ("http.response.body", "http.request")

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") in self.NOISY_EVENTS
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def _otlp_headers(raw: str) -> Optional[dict]:
    """Parse ``key=value,key2=value2`` into exporter headers."""
    headers = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers or None


def configure_tracing() -> None:
    """Install the tracer provider once per process."""
    global _tracing_configured
    if _tracing_configured:
        return
    tracer_provider = TracerProvider(
        resource=Resource.create({"service.name": SERVICE_NAME})
    )
    if OTLP_ENDPOINT:
        otlp_exporter = OTLPSpanExporter(
            endpoint=OTLP_ENDPOINT, headers=_otlp_headers(OTLP_HEADERS)
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
    trace.set_tracer_provider(tracer_provider)
    _tracing_configured = True


def create_app(
    config: ProxyConfig,
    store: Optional[TransactionStore] = None,
    orchestrator: Optional[SystemProxyOrchestrator] = None,
) -> FastAPI:
    """
    Build the ASGI application: control API, explicit forwarding and, unless
    disabled, the catch-all proxy route. Every request is captured as a
    transaction in ``store``.
    """
    store = store if store is not None else TransactionStore()
    orchestrator = orchestrator or SystemProxyOrchestrator(backup_dir=config.backup_dir)

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        docs_url=f"{CONTROL_PREFIX}/docs",
        openapi_url=f"{CONTROL_PREFIX}/openapi.json",
        redoc_url=None,
    )
    app.state.config = config
    app.state.transaction_store = store
    app.state.system_proxy = orchestrator

    # A registry per app so several apps (tests) can coexist in one process
    registry = CollectorRegistry()
    instrumentator = Instrumentator(registry=registry)
    instrumentator.instrument(app).expose(
        app, endpoint=f"{CONTROL_PREFIX}/metrics", include_in_schema=False
    )
    app_info = Info("localproxy_app_info", "Application Info", registry=registry)
    app_info.info({"app_name": SERVICE_NAME, "version": __version__})

    configure_tracing()
    FastAPIInstrumentor.instrument_app(app, excluded_urls=f"{CONTROL_PREFIX}/metrics")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.include_router(forward_router)
    if config.system_proxy_enabled:
        # must stay last: it matches every path
        app.include_router(catch_all_router)
        app.add_middleware(AbsoluteFormMiddleware)

    # Added last so it wraps everything, including CORS preflight answers
    app.add_middleware(
        TransactionCaptureMiddleware,
        store=store,
        max_body_bytes=config.max_captured_body,
    )
    return app
