import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional, Sequence

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from prometheus_client import CollectorRegistry, Info
from prometheus_fastapi_instrumentator import Instrumentator

from hostproxy import vars as settings
from hostproxy.api import router as api_router
from hostproxy.diagnostics import router as diagnostics_router
from hostproxy.proxy.dispatcher import Dispatcher
from hostproxy.proxy.route import router as proxy_router
from hostproxy.registry import Registry

logger = logging.getLogger("uvicorn.error")


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    Every proxied body chunk would otherwise produce its own span.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


def _parse_otlp_headers(raw: str) -> Optional[Dict[str, str]]:
    """`key=value,key2=value2` as used by the OTLP environment variables."""
    if not raw:
        return None
    pairs = (item.split("=", 1) for item in raw.split(",") if "=" in item)
    return {key.strip(): value.strip() for key, value in pairs}


def configure_tracing(service_name: str, endpoint: Optional[str], headers: str) -> None:
    trace.set_tracer_provider(
        TracerProvider(resource=Resource.create({"service.name": service_name}))
    )
    if endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=endpoint,
            headers=_parse_otlp_headers(headers),
        )
        trace.get_tracer_provider().add_span_processor(
            BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
        )
        logger.info(f"[Server] Exporting traces to {endpoint}")


def create_app(
    registry: Optional[Registry] = None,
    db_path: Optional[str] = None,
    api_key: Optional[str] = None,
    api_domain: Optional[str] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    debug: Optional[bool] = None,
    metrics_path: Optional[str] = None,
) -> FastAPI:
    """
    Build the proxy application.

    The registry is opened once when the app starts and closed when it stops;
    a registry passed in is used as is and left open for its owner to close.
    Arguments left as None fall back to the environment settings.
    """
    debug = settings.DEBUG if debug is None else debug

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = registry is None
        app.state.registry = (
            Registry(db_path or settings.DB_PATH) if owned else registry
        )
        app.state.dispatcher = Dispatcher(
            app.state.registry,
            timeout=settings.PROXY_TIMEOUT if timeout is None else timeout,
            transport=transport,
            debug=debug,
        )
        logger.info("[Server] Proxy ready")
        try:
            yield
        finally:
            await app.state.dispatcher.aclose()
            if owned:
                app.state.registry.close()
            logger.info("[Server] Proxy stopped")

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.api_key = settings.PROXY_API_KEY if api_key is None else api_key
    app.state.api_domain = settings.PROXY_API_DOMAIN if api_domain is None else api_domain

    # each app gets its own collectors so several apps can live in one process
    metrics_registry = CollectorRegistry()
    app_info = Info("hostproxy_app_info", "Application Info", registry=metrics_registry)
    app_info.info({"app_name": settings.SERVICE_NAME})
    Instrumentator(registry=metrics_registry).instrument(app).expose(
        app, endpoint=metrics_path or settings.METRICS_PATH, include_in_schema=False
    )
    app.state.metrics_registry = metrics_registry

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.info(f"[API] Rejected invalid request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    FastAPIInstrumentor.instrument_app(app)

    # Most specific first; the proxy catch-all must stay last
    app.include_router(api_router)
    app.include_router(diagnostics_router)
    app.include_router(proxy_router)
    return app


configure_tracing(settings.SERVICE_NAME, settings.OTLP_ENDPOINT, settings.OTLP_HEADERS)
app = create_app()
