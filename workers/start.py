from datetime import timedelta

from celery import Celery

from impersonation_guard.core.config import get_settings
from impersonation_guard.core.logging import configure_logging

from .telemetry import configure_worker_telemetry

settings = get_settings()
BROKER_URL = settings.celery_broker_url or "redis://redis:6379/0"

configure_logging()
celery_app = Celery(
    "workers",
    broker=BROKER_URL,
    backend=settings.celery_result_backend or BROKER_URL,
)
celery_app.conf.beat_schedule = {
    f"cleanup-expired-impersonations-{tenant_id}": {
        "task": "impersonation.cleanup_expired_sessions",
        "schedule": timedelta(minutes=settings.cleanup_interval_minutes),
        "args": (tenant_id,),
    }
    for tenant_id in settings.cleanup_tenant_ids
}
celery_app.autodiscover_tasks(["workers.tasks"])
configure_worker_telemetry(celery_app)
