"""Prometheus and OpenTelemetry instrumentation for the cleanup workers."""

from __future__ import annotations

import threading
import time
from typing import Dict

from celery import Celery, signals
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.celery import CeleryInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram, start_http_server

from impersonation_guard.core.config import get_settings
from impersonation_guard.telemetry import parse_headers

WORKER_TASKS = Counter(
    "impersonation_guard_worker_tasks_total",
    "Worker task executions grouped by outcome",
    labelnames=("task", "status"),
)
WORKER_TASK_SECONDS = Histogram(
    "impersonation_guard_worker_task_duration_seconds",
    "Wall time of finished worker tasks",
    labelnames=("task",),
    buckets=(0.05, 0.1, 0.5, 1, 5, 15, 60),
)

_started: Dict[str, float] = {}
_started_lock = threading.Lock()
_configured = False


def configure_worker_telemetry(app: Celery) -> None:
    """Expose worker metrics and trace task execution once per process."""

    global _configured
    if _configured:
        return

    settings = get_settings()
    if settings.worker_prometheus_port is not None:
        start_http_server(
            port=settings.worker_prometheus_port,
            addr=settings.worker_prometheus_host,
        )

    if settings.otel_exporter_otlp_endpoint:
        provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": settings.otel_service_name or "impersonation-guard-workers",
                    "service.version": "0.1.0",
                }
            )
        )
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(
                    endpoint=settings.otel_exporter_otlp_endpoint,
                    headers=parse_headers(settings.otel_exporter_otlp_headers),
                )
            )
        )
        trace.set_tracer_provider(provider)
        CeleryInstrumentor().instrument(tracer_provider=provider)
    else:
        CeleryInstrumentor().instrument()

    signals.task_prerun.connect(on_task_prerun, weak=False)
    signals.task_postrun.connect(on_task_postrun, weak=False)
    signals.task_failure.connect(on_task_failure, weak=False)
    _configured = True


def on_task_prerun(task_id: str, task, **_: object) -> None:
    with _started_lock:
        _started[task_id] = time.perf_counter()
    WORKER_TASKS.labels(task=task.name, status="started").inc()


def on_task_postrun(task_id: str, task, state: str | None = None, **_: object) -> None:
    elapsed = _elapsed(task_id)
    if state == "FAILURE":
        return
    WORKER_TASKS.labels(task=task.name, status="succeeded").inc()
    if elapsed is not None:
        WORKER_TASK_SECONDS.labels(task=task.name).observe(elapsed)


def on_task_failure(task_id: str, exception, traceback, sender, **_: object) -> None:
    elapsed = _elapsed(task_id)
    name = sender.name if sender is not None else "unknown"
    WORKER_TASKS.labels(task=name, status="failed").inc()
    if elapsed is not None:
        WORKER_TASK_SECONDS.labels(task=name).observe(elapsed)


def _elapsed(task_id: str) -> float | None:
    with _started_lock:
        started = _started.pop(task_id, None)
    if started is None:
        return None
    return max(0.0, time.perf_counter() - started)
