"""
Property-based tests for the impersonation rate limiter.

Each test drives the limiter with an in-memory store and a frozen clock, so
every generated example starts from empty state.
"""

from __future__ import annotations

import asyncio

from hypothesis import given, settings, strategies as st

from impersonation_guard.domain.rate_limits import RateLimitConfig, ViolationType
from impersonation_guard.repositories.rate_limits import InMemoryRateLimitRepository
from impersonation_guard.services.rate_limiter import ImpersonationRateLimiter

from .conftest import FrozenClock

identifier_strategy = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789_-",
    min_size=1,
    max_size=24,
)


def build_limiter(hourly: int, concurrent: int) -> tuple[ImpersonationRateLimiter, FrozenClock]:
    clock = FrozenClock()
    config = RateLimitConfig(
        max_impersonations_per_hour=hourly,
        max_concurrent_sessions=concurrent,
        max_session_duration_minutes=30,
    )
    return ImpersonationRateLimiter(InMemoryRateLimitRepository(), config, clock=clock), clock


@settings(max_examples=50, deadline=None)
@given(
    hourly=st.integers(min_value=1, max_value=12),
    admin=identifier_strategy,
    tenant=identifier_strategy,
    gap_seconds=st.integers(min_value=0, max_value=300),
)
def test_hourly_quota_blocks_next_check(hourly: int, admin: str, tenant: str, gap_seconds: int):
    """Once the hourly quota is used up inside the window, the next check is denied."""

    async def scenario() -> None:
        limiter, clock = build_limiter(hourly, concurrent=hourly + 1)
        for index in range(hourly):
            session = await limiter.record_impersonation_start(
                admin, tenant, f"user_{index}", f"user_{index}@example.com"
            )
            await limiter.record_impersonation_end(session.session_id, tenant)
            clock.advance(seconds=gap_seconds % (3600 // hourly))

        result = await limiter.check_impersonation_rate_limit(admin, tenant, "next")
        assert not result.allowed
        assert result.violation_type == ViolationType.HOURLY
        assert result.retry_after_seconds > 0

    asyncio.run(scenario())


@settings(max_examples=50, deadline=None)
@given(
    concurrent=st.integers(min_value=1, max_value=8),
    headroom=st.integers(min_value=1, max_value=10),
    admin=identifier_strategy,
    tenant=identifier_strategy,
)
def test_concurrency_cap_blocks_despite_hourly_headroom(
    concurrent: int, headroom: int, admin: str, tenant: str
):
    async def scenario() -> None:
        limiter, _ = build_limiter(concurrent + headroom, concurrent)
        for index in range(concurrent):
            await limiter.record_impersonation_start(
                admin, tenant, f"user_{index}", f"user_{index}@example.com"
            )

        result = await limiter.check_impersonation_rate_limit(admin, tenant, "next")
        assert not result.allowed
        assert result.violation_type == ViolationType.CONCURRENT
        assert result.remaining_impersonations == headroom

    asyncio.run(scenario())


@settings(max_examples=30, deadline=None)
@given(admin=identifier_strategy, tenant=identifier_strategy)
def test_ending_twice_returns_true_then_false(admin: str, tenant: str):
    async def scenario() -> None:
        limiter, _ = build_limiter(10, 5)
        session = await limiter.record_impersonation_start(
            admin, tenant, "target", "target@example.com"
        )
        assert await limiter.record_impersonation_end(session.session_id, tenant) is True
        assert await limiter.record_impersonation_end(session.session_id, tenant) is False

    asyncio.run(scenario())


@settings(max_examples=50, deadline=None)
@given(
    admin=identifier_strategy,
    tenants=st.lists(identifier_strategy, min_size=2, max_size=2, unique=True),
    started=st.integers(min_value=1, max_value=5),
)
def test_tenants_never_see_each_other(admin: str, tenants: list[str], started: int):
    tenant_a, tenant_b = tenants

    async def scenario() -> None:
        limiter, clock = build_limiter(10, 5)
        sessions = [
            await limiter.record_impersonation_start(
                admin, tenant_a, f"user_{index}", f"user_{index}@example.com"
            )
            for index in range(started)
        ]
        await limiter.check_impersonation_rate_limit(admin, tenant_a, "probe")

        assert await limiter.get_active_sessions(admin, tenant_b) == []
        stats_b = await limiter.get_rate_limit_stats(admin, tenant_b)
        assert stats_b.impersonations_this_hour == 0
        assert stats_b.concurrent_sessions == 0

        # Session ids from another tenant are invisible.
        assert not await limiter.record_impersonation_end(sessions[0].session_id, tenant_b)
        assert not await limiter.force_terminate_session(sessions[0].session_id, tenant_b, "wrong tenant")

        clock.advance(minutes=45)
        cleanup = await limiter.cleanup_expired_sessions(tenant_b)
        assert cleanup.sessions_expired == 0
        await limiter.reset_rate_limits(admin, tenant_b, "reset other tenant")

        assert len(await limiter.get_active_sessions(admin, tenant_a)) == started

    asyncio.run(scenario())
