"""Pure quota evaluation for impersonation starts.

Nothing in this module touches storage or the clock: callers pass the usage
read from the store together with ``now`` so the same decision can be made at
check time and again while the store holds its per-admin lock.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from ..domain.rate_limits import (
    QuotaUsage,
    RateLimitCheckResult,
    RateLimitConfig,
    RateLimitStats,
    ViolationType,
)


def window_start(config: RateLimitConfig, now: datetime) -> datetime:
    """Return the exclusive lower bound of the quota window ending at ``now``."""

    return now - timedelta(minutes=config.window_minutes)


def evaluate_quota(
    config: RateLimitConfig,
    usage: QuotaUsage,
    now: datetime,
) -> RateLimitCheckResult:
    """Decide whether one more impersonation may start.

    The hourly rule is checked before the concurrency rule, so an admin over
    both limits is always reported as an hourly violation.
    """

    window = timedelta(minutes=config.window_minutes)
    lower_bound = now - window
    starts = sorted(started for started in usage.window_starts if started > lower_bound)
    active = sorted(usage.active_started_at)

    hourly_count = len(starts)
    concurrent_count = len(active)
    hourly_limit = config.max_impersonations_per_hour
    concurrent_limit = config.max_concurrent_sessions

    oldest_start_reset = starts[0] + window if starts else None
    exceeds_hourly = hourly_count >= hourly_limit
    exceeds_concurrent = concurrent_count >= concurrent_limit

    result = RateLimitCheckResult(
        allowed=True,
        impersonations_this_hour=hourly_count,
        hourly_limit=hourly_limit,
        concurrent_sessions=concurrent_count,
        concurrent_limit=concurrent_limit,
        remaining_impersonations=max(hourly_limit - hourly_count, 0),
        remaining_concurrent_slots=max(concurrent_limit - concurrent_count, 0),
        reset_at=oldest_start_reset,
    )
    if not config.enabled or not (exceeds_hourly or exceeds_concurrent):
        return result

    if exceeds_hourly:
        # The start that has to age out before one slot frees up.
        reset_at = starts[hourly_count - hourly_limit] + window
        violation_type = ViolationType.HOURLY
        reason = (
            f"Rate limit exceeded: {hourly_count}/{hourly_limit} impersonations "
            f"in the last {config.window_minutes} minutes"
        )
    else:
        reset_at = active[concurrent_count - concurrent_limit] + timedelta(
            minutes=config.max_session_duration_minutes
        )
        violation_type = ViolationType.CONCURRENT
        reason = (
            f"Concurrent session limit exceeded: {concurrent_count}/{concurrent_limit} "
            "active sessions"
        )

    return result.model_copy(
        update={
            "allowed": False,
            "reason": reason,
            "violation_type": violation_type,
            "reset_at": reset_at,
            "retry_after_seconds": max(math.ceil((reset_at - now).total_seconds()), 0),
        }
    )


def _usage_percent(count: int, limit: int) -> float:
    return round(count / limit * 100, 1)


def build_stats(
    config: RateLimitConfig,
    usage: QuotaUsage,
    *,
    super_admin_id: str,
    tenant_id: str,
    violation_count: int,
    now: datetime,
) -> RateLimitStats:
    """Project raw usage into the dashboard statistics."""

    decision = evaluate_quota(config, usage, now)
    hourly_percent = _usage_percent(decision.impersonations_this_hour, decision.hourly_limit)
    concurrent_percent = _usage_percent(decision.concurrent_sessions, decision.concurrent_limit)

    oldest_age = 0.0
    if usage.active_started_at:
        oldest = min(usage.active_started_at)
        oldest_age = round(max((now - oldest).total_seconds(), 0.0) / 60, 2)

    next_reset_at = None
    if decision.impersonations_this_hour:
        next_reset_at = min(
            started for started in usage.window_starts if started > window_start(config, now)
        ) + timedelta(minutes=config.window_minutes)

    return RateLimitStats(
        super_admin_id=super_admin_id,
        tenant_id=tenant_id,
        impersonations_this_hour=decision.impersonations_this_hour,
        hourly_limit=decision.hourly_limit,
        concurrent_sessions=decision.concurrent_sessions,
        concurrent_limit=decision.concurrent_limit,
        max_session_duration_minutes=config.max_session_duration_minutes,
        hourly_usage_percent=hourly_percent,
        concurrent_usage_percent=concurrent_percent,
        remaining_impersonations=decision.remaining_impersonations,
        remaining_concurrent_slots=decision.remaining_concurrent_slots,
        oldest_session_age_minutes=oldest_age,
        next_reset_at=next_reset_at,
        violation_count=violation_count,
        is_near_hourly_limit=hourly_percent > config.warning_threshold_percent,
        is_near_concurrent_limit=concurrent_percent > config.warning_threshold_percent,
        is_rate_limited=not decision.allowed,
        checked_at=now,
    )
