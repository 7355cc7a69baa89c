import atexit
import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from app.settings import settings

_TRACING_CONFIGURED = False
_HTTPX_CONFIGURED = False
_SQLALCHEMY_ENGINES: set[int] = set()
_TRACING_SHUTDOWN = False

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.reservations")


def _set_http_attributes(span, *, path: str | None, scheme: str | None, host: str | None) -> None:
    if not span or not span.is_recording():
        return
    safe_path = path or "/"
    if scheme and host:
        span.set_attribute("http.url", f"{scheme}://{host}{safe_path}")
    span.set_attribute("http.target", safe_path)


def _fastapi_request_hook(span, scope) -> None:  # noqa: ANN001
    server = scope.get("server") or (None, None)
    route = scope.get("route")
    # Route templates keep reservation ids and session ids out of span attributes.
    _set_http_attributes(
        span,
        path=getattr(route, "path", None) or scope.get("path", "/"),
        scheme=scope.get("scheme"),
        host=server[0] if server else None,
    )


def _httpx_request_hook(span, request) -> None:  # noqa: ANN001
    url = request.url.copy_with(query=None)
    _set_http_attributes(span, path=url.path, scheme=url.scheme, host=url.host)


def configure_tracing(*, service_name: str | None = None) -> None:
    global _TRACING_CONFIGURED, _HTTPX_CONFIGURED
    if _TRACING_CONFIGURED:
        return

    resource = Resource.create(
        {
            SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or service_name or settings.app_name,
            DEPLOYMENT_ENVIRONMENT: settings.app_env,
        }
    )
    tracer_provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if otlp_endpoint and not settings.testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        logger.debug("tracing_exporter_skipped")

    if not _HTTPX_CONFIGURED:
        HTTPXClientInstrumentor().instrument(
            tracer_provider=tracer_provider,
            request_hook=_httpx_request_hook,
        )
        _HTTPX_CONFIGURED = True

    _TRACING_CONFIGURED = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_fastapi_request_hook,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None or id(engine) in _SQLALCHEMY_ENGINES:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine,
        tracer_provider=trace.get_tracer_provider(),
        capture_statement=False,
    )
    _SQLALCHEMY_ENGINES.add(id(engine))


@contextmanager
def domain_span(name: str, **attributes: Any) -> Iterator[Any]:
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, str(value))
        yield span


def shutdown_tracing(*, force_flush: bool = True) -> None:
    global _TRACING_SHUTDOWN
    if _TRACING_SHUTDOWN:
        return
    _TRACING_SHUTDOWN = True
    try:
        tracer_provider = trace.get_tracer_provider()
        if force_flush and callable(getattr(tracer_provider, "force_flush", None)):
            tracer_provider.force_flush()
        if callable(getattr(tracer_provider, "shutdown", None)):
            tracer_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
