from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from impersonation_guard.core.clock import utcnow
from impersonation_guard.core.config import get_settings
from impersonation_guard.db import dispose_engine, get_sessionmaker, init_db
from impersonation_guard.db import session as db_session_module
from impersonation_guard.repositories.rate_limits import SqlAlchemyRateLimitRepository
from impersonation_guard.services.rate_limiter import ImpersonationRateLimiter
from workers.start import celery_app
from workers.tasks import cleanup

from .conftest import FrozenClock


async def _seed_overdue_session(session_factory, config) -> None:
    async with session_factory() as session:
        seeding = ImpersonationRateLimiter(
            SqlAlchemyRateLimitRepository(session),
            config,
            clock=FrozenClock(utcnow() - timedelta(minutes=45)),
        )
        await seeding.record_impersonation_start("admin_1", "t1", "user_1", "user_1@example.com")


@pytest.fixture
def worker_database(tmp_path, monkeypatch, config):
    """File backed database configured through settings, as a worker process sees it."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}")
    get_settings.cache_clear()

    async def prepare() -> None:
        try:
            await init_db()
            await _seed_overdue_session(get_sessionmaker(), config)
        finally:
            await dispose_engine()

    asyncio.run(prepare())
    try:
        yield
    finally:
        asyncio.run(dispose_engine())
        get_settings.cache_clear()


def test_cleanup_task_is_registered():
    assert "impersonation.cleanup_expired_sessions" in celery_app.tasks


async def test_run_cleanup_expires_overdue_sessions(db_engine, config, monkeypatch):
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    monkeypatch.setattr(cleanup, "get_sessionmaker", lambda: session_factory)

    await _seed_overdue_session(session_factory, config)
    result = await cleanup.run_cleanup("t1")

    assert result.tenant_id == "t1"
    assert result.sessions_expired == 1


def test_consecutive_task_runs_each_get_a_working_engine(worker_database):
    first = cleanup.cleanup_expired_sessions_task("t1")
    assert db_session_module._engine is None

    second = cleanup.cleanup_expired_sessions_task("t1")
    assert db_session_module._engine is None

    assert first["sessions_expired"] == 1
    assert second["sessions_expired"] == 0
