from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from impersonation_guard.domain.errors import (
    ImpersonationRateLimitExceeded,
    InvalidIdentifierError,
)
from impersonation_guard.domain.rate_limits import (
    SessionOutcome,
    ViolationSeverity,
    ViolationType,
)

ADMIN = "admin_1"
TENANT = "t1"


async def _start(limiter, target: str = "user_1", admin: str = ADMIN, tenant: str = TENANT):
    return await limiter.record_impersonation_start(admin, tenant, target, f"{target}@example.com")


async def test_sixth_concurrent_check_is_denied(limiter):
    for index in range(5):
        await _start(limiter, f"user_{index}")

    result = await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")

    assert not result.allowed
    assert result.violation_type == ViolationType.CONCURRENT
    assert result.concurrent_sessions == 5
    assert result.remaining_concurrent_slots == 0


async def test_ending_a_session_frees_a_concurrent_slot(limiter):
    sessions = [await _start(limiter, f"user_{index}") for index in range(5)]

    assert await limiter.record_impersonation_end(sessions[0].session_id, TENANT)
    result = await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")

    assert result.allowed
    assert result.concurrent_sessions == 4


async def test_overdue_session_is_flagged_and_expired_by_cleanup(limiter, clock):
    session = await _start(limiter)
    clock.advance(minutes=31)

    assert await limiter.check_session_duration_exceeded(session.session_id, TENANT)
    result = await limiter.cleanup_expired_sessions(TENANT)

    assert result.sessions_expired == 1
    assert result.violations_pruned == 0
    assert await limiter.get_active_sessions(ADMIN, TENANT) == []

    history = await limiter.get_session_history(ADMIN, TENANT)
    assert [entry.outcome for entry in history] == [SessionOutcome.EXPIRED]
    assert history[0].duration_seconds == 31 * 60

    violations = await limiter.get_violations(ADMIN, TENANT)
    assert len(violations) == 1
    assert violations[0].violation_type == ViolationType.DURATION
    assert violations[0].severity == ViolationSeverity.WARNING
    assert violations[0].session_id == session.session_id
    assert violations[0].observed_value == 31


async def test_session_at_exact_duration_is_not_exceeded(limiter, clock):
    session = await _start(limiter)
    clock.advance(minutes=30)

    assert not await limiter.check_session_duration_exceeded(session.session_id, TENANT)
    result = await limiter.cleanup_expired_sessions(TENANT)
    assert result.sessions_expired == 0


async def test_hourly_window_rolls_forward(limiter, clock):
    for index in range(10):
        session = await _start(limiter, f"user_{index}")
        await limiter.record_impersonation_end(session.session_id, TENANT)
        clock.advance(minutes=1)

    denied = await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_11")
    assert not denied.allowed
    assert denied.violation_type == ViolationType.HOURLY

    # 61 minutes after the first start; the first two starts have aged out
    clock.advance(minutes=51)
    allowed = await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_12")
    assert allowed.allowed
    assert allowed.impersonations_this_hour == 8


async def test_denied_check_records_violation(limiter):
    for index in range(5):
        await _start(limiter, f"user_{index}")

    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")
    violations = await limiter.get_violations(ADMIN, TENANT)

    assert len(violations) == 1
    assert violations[0].violation_type == ViolationType.CONCURRENT
    assert violations[0].severity == ViolationSeverity.ERROR
    assert violations[0].target_user_id == "user_99"
    assert violations[0].limit_value == 5
    assert violations[0].observed_value == 5


async def test_start_over_limit_raises_and_records(limiter):
    for index in range(5):
        await _start(limiter, f"user_{index}")

    with pytest.raises(ImpersonationRateLimitExceeded) as excinfo:
        await _start(limiter, "user_99")

    assert excinfo.value.result.violation_type == ViolationType.CONCURRENT
    assert len(await limiter.get_active_sessions(ADMIN, TENANT)) == 5
    assert len(await limiter.get_violations(ADMIN, TENANT)) == 1


async def test_active_sessions_are_oldest_first(limiter, clock):
    first = await _start(limiter, "user_a")
    clock.advance(minutes=2)
    second = await _start(limiter, "user_b")

    sessions = await limiter.get_active_sessions(ADMIN, TENANT)

    assert [session.session_id for session in sessions] == [first.session_id, second.session_id]
    assert sessions[0].expires_at == first.started_at + timedelta(minutes=30)


async def test_force_terminate_keeps_reason_in_history(limiter):
    session = await _start(limiter)

    assert await limiter.force_terminate_session(session.session_id, TENANT, "suspicious access")
    assert not await limiter.force_terminate_session(session.session_id, TENANT, "again")

    history = await limiter.get_session_history(ADMIN, TENANT)
    assert history[0].outcome == SessionOutcome.FORCE_TERMINATED
    assert history[0].reason == "suspicious access"


async def test_force_terminate_does_not_count_as_violation(limiter):
    session = await _start(limiter)
    await limiter.force_terminate_session(session.session_id, TENANT, "support closed")

    assert await limiter.get_violations(ADMIN, TENANT) == []


async def test_reset_clears_sessions_and_usage(limiter):
    for index in range(5):
        await _start(limiter, f"user_{index}")
    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")

    confirmation = await limiter.reset_rate_limits(ADMIN, TENANT, "incident resolved")

    assert confirmation.sessions_cleared == 5
    assert confirmation.violations_cleared == 1
    assert confirmation.start_events_cleared == 5
    assert await limiter.get_active_sessions(ADMIN, TENANT) == []
    stats = await limiter.get_rate_limit_stats(ADMIN, TENANT)
    assert stats.impersonations_this_hour == 0
    assert stats.concurrent_sessions == 0
    assert stats.violation_count == 0
    assert not stats.is_rate_limited


async def test_clear_violations_only_touches_one_admin(limiter):
    for index in range(5):
        await _start(limiter, f"user_{index}")
        await _start(limiter, f"user_{index}", admin="admin_2")
    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")
    await limiter.check_impersonation_rate_limit("admin_2", TENANT, "user_99")

    assert await limiter.clear_violations(ADMIN, TENANT) == 1
    assert await limiter.get_violations(ADMIN, TENANT) == []
    assert len(await limiter.get_violations("admin_2", TENANT)) == 1


async def test_cleanup_prunes_old_violations_and_start_events(limiter, clock):
    for index in range(5):
        await _start(limiter, f"user_{index}")
    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")
    for session in await limiter.get_active_sessions(ADMIN, TENANT):
        await limiter.record_impersonation_end(session.session_id, TENANT)

    clock.advance(days=8)
    result = await limiter.cleanup_expired_sessions(TENANT, days_to_keep=7)

    assert result.sessions_expired == 0
    assert result.violations_pruned == 1
    assert result.start_events_pruned == 5
    assert await limiter.get_violations(ADMIN, TENANT, limit_days=30) == []


async def test_cleanup_keeps_starts_inside_quota_window(limiter, clock):
    await _start(limiter)

    result = await limiter.cleanup_expired_sessions(TENANT, days_to_keep=1)

    assert result.start_events_pruned == 0
    stats = await limiter.get_rate_limit_stats(ADMIN, TENANT)
    assert stats.impersonations_this_hour == 1


async def test_get_violations_respects_lookback(limiter, clock):
    for index in range(5):
        await _start(limiter, f"user_{index}")
    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_98")
    clock.advance(days=3)
    await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")

    recent = await limiter.get_violations(ADMIN, TENANT, limit_days=1)
    everything = await limiter.get_violations(ADMIN, TENANT, limit_days=30)

    assert [violation.target_user_id for violation in recent] == ["user_99"]
    assert [violation.target_user_id for violation in everything] == ["user_99", "user_98"]


async def test_unknown_session_operations_are_noops(limiter):
    missing = uuid4()

    assert not await limiter.record_impersonation_end(missing, TENANT)
    assert not await limiter.check_session_duration_exceeded(missing, TENANT)
    assert not await limiter.force_terminate_session(missing, TENANT, "not found")


async def test_string_session_ids_are_accepted(limiter):
    session = await _start(limiter)

    assert await limiter.record_impersonation_end(str(session.session_id), TENANT)


@pytest.mark.parametrize(
    ("admin", "tenant", "target"),
    [("", TENANT, "user_1"), (ADMIN, "", "user_1"), (ADMIN, TENANT, "  ")],
)
async def test_blank_identifiers_are_rejected(limiter, admin, tenant, target):
    with pytest.raises(InvalidIdentifierError):
        await limiter.check_impersonation_rate_limit(admin, tenant, target)


async def test_malformed_session_id_is_rejected(limiter):
    with pytest.raises(InvalidIdentifierError) as excinfo:
        await limiter.record_impersonation_end("not-a-uuid", TENANT)

    assert excinfo.value.field == "session_id"


async def test_reset_requires_reason(limiter):
    with pytest.raises(InvalidIdentifierError):
        await limiter.reset_rate_limits(ADMIN, TENANT, "")


async def test_lookback_must_be_positive(limiter):
    with pytest.raises(InvalidIdentifierError):
        await limiter.get_violations(ADMIN, TENANT, limit_days=0)
    with pytest.raises(InvalidIdentifierError):
        await limiter.cleanup_expired_sessions(TENANT, days_to_keep=0)


async def test_disabled_limits_never_reject(memory_repository, config, clock):
    from impersonation_guard.services.rate_limiter import ImpersonationRateLimiter

    limiter = ImpersonationRateLimiter(
        memory_repository, config.model_copy(update={"enabled": False}), clock=clock
    )
    for index in range(7):
        await _start(limiter, f"user_{index}")

    result = await limiter.check_impersonation_rate_limit(ADMIN, TENANT, "user_99")

    assert result.allowed
    assert result.concurrent_sessions == 7
    assert await limiter.get_violations(ADMIN, TENANT) == []


async def test_overlong_identifiers_are_rejected(limiter):
    with pytest.raises(InvalidIdentifierError) as excinfo:
        await limiter.check_impersonation_rate_limit(ADMIN, "t" * 256, "user_1")

    assert excinfo.value.field == "tenant_id"
    # reasons may be longer than identifiers
    session = await _start(limiter)
    assert await limiter.force_terminate_session(session.session_id, TENANT, "r" * 400)


async def test_reset_releases_per_admin_bookkeeping(limiter, memory_repository):
    session = await _start(limiter)
    await limiter.record_impersonation_end(session.session_id, TENANT)

    await limiter.reset_rate_limits(ADMIN, TENANT, "rotation")

    assert (TENANT, ADMIN) not in memory_repository._start_events
    assert (TENANT, ADMIN) not in memory_repository._locks
