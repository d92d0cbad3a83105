"""Periodic sweep that expires overdue impersonation sessions."""

from __future__ import annotations

import asyncio

import structlog

from impersonation_guard.core.config import get_settings
from impersonation_guard.db import dispose_engine, get_sessionmaker
from impersonation_guard.domain.rate_limits import CleanupResult
from impersonation_guard.repositories.rate_limits import SqlAlchemyRateLimitRepository
from impersonation_guard.services.rate_limiter import ImpersonationRateLimiter

from ..start import celery_app

logger = structlog.get_logger(__name__)


async def run_cleanup(tenant_id: str, days_to_keep: int | None = None) -> CleanupResult:
    settings = get_settings()
    retention = days_to_keep or settings.violation_retention_days
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        limiter = ImpersonationRateLimiter(
            SqlAlchemyRateLimitRepository(session),
            settings.rate_limit_config(),
        )
        return await limiter.cleanup_expired_sessions(tenant_id, days_to_keep=retention)


async def _sweep(tenant_id: str, days_to_keep: int | None) -> CleanupResult:
    # each task runs on a fresh event loop; pooled connections must not outlive it
    try:
        return await run_cleanup(tenant_id, days_to_keep)
    finally:
        await dispose_engine()


@celery_app.task(name="impersonation.cleanup_expired_sessions")
def cleanup_expired_sessions_task(tenant_id: str, days_to_keep: int | None = None) -> dict:
    logger.info("worker.cleanup.start", tenant_id=tenant_id)
    result = asyncio.run(_sweep(tenant_id, days_to_keep))
    logger.info("worker.cleanup.completed", **result.model_dump())
    return result.model_dump()
