"""Shared fixtures for the rate limiter tests."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from impersonation_guard.db import init_db
from impersonation_guard.domain.rate_limits import RateLimitConfig
from impersonation_guard.repositories.rate_limits import (
    InMemoryRateLimitRepository,
    SqlAlchemyRateLimitRepository,
)
from impersonation_guard.services.rate_limiter import ImpersonationRateLimiter

START = datetime(2024, 5, 1, 12, 0, 0)


class FrozenClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def config() -> RateLimitConfig:
    return RateLimitConfig(
        max_impersonations_per_hour=10,
        max_concurrent_sessions=5,
        max_session_duration_minutes=30,
    )


@pytest.fixture
def memory_repository() -> InMemoryRateLimitRepository:
    return InMemoryRateLimitRepository()


@pytest.fixture
def limiter(memory_repository, config, clock) -> ImpersonationRateLimiter:
    return ImpersonationRateLimiter(memory_repository, config, clock=clock)


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with the rate limiter tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def sql_repository(db_session) -> SqlAlchemyRateLimitRepository:
    return SqlAlchemyRateLimitRepository(db_session)


@pytest.fixture
def sql_limiter(sql_repository, config, clock) -> ImpersonationRateLimiter:
    return ImpersonationRateLimiter(sql_repository, config, clock=clock)
