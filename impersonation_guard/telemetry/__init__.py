"""HTTP metrics and tracing for the impersonation guard API."""

from __future__ import annotations

import time
from typing import Dict
from uuid import UUID

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..core.config import Settings, get_settings

HTTP_REQUESTS = Counter(
    "impersonation_guard_http_requests_total",
    "HTTP requests served, by normalised path and status",
    labelnames=("method", "route", "status"),
)
HTTP_LATENCY = Histogram(
    "impersonation_guard_http_request_duration_seconds",
    "Time spent serving HTTP requests",
    labelnames=("method", "route"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)
HTTP_THROTTLED = Counter(
    "impersonation_guard_http_throttled_total",
    "Requests answered with 429 because an impersonation limit was hit",
    labelnames=("route",),
)

_tracer_provider: TracerProvider | None = None


class RequestMetricsMiddleware(BaseHTTPMiddleware):
    """Count and time every request except scrapes of the metrics endpoint."""

    def __init__(self, app, metrics_path: str) -> None:
        super().__init__(app)
        self._metrics_path = metrics_path

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.url.path == self._metrics_path:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        label = normalise_path(request.url.path)
        HTTP_REQUESTS.labels(
            method=request.method, route=label, status=str(response.status_code)
        ).inc()
        HTTP_LATENCY.labels(method=request.method, route=label).observe(elapsed)
        if response.status_code == 429:
            HTTP_THROTTLED.labels(route=label).inc()
        return response


def setup_prometheus(app: FastAPI) -> None:
    """Install the request metrics middleware and the scrape endpoint."""

    metrics_path = get_settings().prometheus_metrics_path
    app.add_middleware(RequestMetricsMiddleware, metrics_path=metrics_path)

    @app.get(metrics_path, include_in_schema=False)
    async def prometheus_metrics() -> Response:  # pragma: no cover - trivial
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_tracing(app: FastAPI) -> None:
    """Export spans over OTLP when an endpoint is configured; otherwise do nothing."""

    global _tracer_provider
    settings = get_settings()
    if not settings.otel_exporter_otlp_endpoint:
        return
    if _tracer_provider is None:
        _tracer_provider = _build_tracer_provider(settings)
        trace.set_tracer_provider(_tracer_provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=_tracer_provider)


def _build_tracer_provider(settings: Settings) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name or settings.project_name,
                "service.namespace": "impersonation-guard",
                "service.version": "0.1.0",
            }
        )
    )
    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint,
        headers=parse_headers(settings.otel_exporter_otlp_headers),
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def normalise_path(path: str) -> str:
    """Replace UUID and numeric path segments so metric labels stay bounded."""

    segments = []
    for segment in path.split("/"):
        if segment.isdigit():
            segments.append("{id}")
        elif _is_uuid(segment):
            segments.append("{uuid}")
        else:
            segments.append(segment)
    return "/".join(segments) or "/"


def _is_uuid(value: str) -> bool:
    if len(value) not in (32, 36):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def parse_headers(raw: str | None) -> Dict[str, str]:
    """Turn ``key=value,key2=value2`` into a header mapping, skipping malformed pairs."""

    headers: Dict[str, str] = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            headers[key.strip()] = value.strip()
    return headers
