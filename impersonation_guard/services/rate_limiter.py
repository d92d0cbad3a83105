"""Impersonation rate limiter: quota checks, session lifecycle and statistics."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

import structlog
from opentelemetry import trace

from ..core.clock import Clock, utcnow
from ..domain.errors import ImpersonationRateLimitExceeded, InvalidIdentifierError
from ..domain.rate_limits import (
    ActiveSession,
    CleanupResult,
    RateLimitCheckResult,
    RateLimitConfig,
    RateLimitStats,
    RateLimitViolation,
    RateLimitViolationCreate,
    ResetConfirmation,
    SessionHistoryEntry,
    SessionOutcome,
    ViolationSeverity,
    ViolationType,
)
from ..repositories.rate_limits import RateLimitRepository
from ..telemetry.metrics import (
    IMPERSONATION_CHECKS,
    IMPERSONATION_STARTS,
    RATE_LIMIT_VIOLATIONS,
    SESSION_TERMINATIONS,
)
from .quota import build_stats, evaluate_quota, window_start

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

EXPIRED_SESSION_REASON = "maximum session duration exceeded"
# matches the width of the identifier and email columns
MAX_IDENTIFIER_LENGTH = 255
MAX_EMAIL_LENGTH = 320
MAX_REASON_LENGTH = 500


def _require(field: str, value: object, max_length: int = MAX_IDENTIFIER_LENGTH) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentifierError(field)
    if len(value) > max_length:
        raise InvalidIdentifierError(field, f"{field} must be at most {max_length} characters")
    return value


def _parse_session_id(value: UUID | str) -> UUID:
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidIdentifierError("session_id")
    try:
        return UUID(value)
    except ValueError as exc:
        raise InvalidIdentifierError("session_id", "session_id must be a UUID") from exc


def _require_days(field: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidIdentifierError(field, f"{field} must be a positive number of days")
    return value


class ImpersonationRateLimiter:
    """Enforces impersonation quotas for super admins within a tenant.

    The limiter owns no state of its own: usage is always derived from the
    repository, and every call is scoped to a single tenant. Quota breaches on
    the check path are returned as results, not raised.
    """

    def __init__(
        self,
        repository: RateLimitRepository,
        config: RateLimitConfig,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._config = config
        self._clock = clock

    def get_config(self) -> RateLimitConfig:
        return self._config

    async def check_impersonation_rate_limit(
        self,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
    ) -> RateLimitCheckResult:
        """Evaluate whether ``super_admin_id`` may start another impersonation."""

        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        _require("target_user_id", target_user_id)

        with tracer.start_as_current_span("rate_limit.check"):
            now = self._clock()
            usage = await self._repository.load_usage(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                window_start=window_start(self._config, now),
            )
            result = evaluate_quota(self._config, usage, now)
            if result.allowed:
                IMPERSONATION_CHECKS.labels(outcome="allowed").inc()
                return result

            IMPERSONATION_CHECKS.labels(outcome=result.violation_type.value).inc()
            await self._record_quota_violation(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
                result=result,
                occurred_at=now,
            )
            logger.info(
                "rate_limit.check_denied",
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
                violation_type=result.violation_type.value,
                observed=result.observed_value,
                limit=result.limit_value,
            )
            return result

    async def record_impersonation_start(
        self,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
        target_user_email: str,
    ) -> ActiveSession:
        """Persist a new session after a passing check.

        Limits are evaluated again inside the store's atomic reservation; a
        start that lost a race raises ``ImpersonationRateLimitExceeded`` with
        the same result a failed check would have returned.
        """

        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        _require("target_user_id", target_user_id)
        _require("target_user_email", target_user_email, MAX_EMAIL_LENGTH)

        with tracer.start_as_current_span("rate_limit.record_start"):
            now = self._clock()
            result, session = await self._repository.reserve_session(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
                target_user_email=target_user_email,
                started_at=now,
                expires_at=now + timedelta(minutes=self._config.max_session_duration_minutes),
                window_start=window_start(self._config, now),
                admit=lambda usage: evaluate_quota(self._config, usage, now),
            )
            if session is None:
                IMPERSONATION_STARTS.labels(status="rejected").inc()
                await self._record_quota_violation(
                    super_admin_id=super_admin_id,
                    tenant_id=tenant_id,
                    target_user_id=target_user_id,
                    result=result,
                    occurred_at=now,
                )
                logger.warning(
                    "rate_limit.start_rejected",
                    super_admin_id=super_admin_id,
                    tenant_id=tenant_id,
                    target_user_id=target_user_id,
                    violation_type=result.violation_type.value,
                )
                raise ImpersonationRateLimitExceeded(result)

            IMPERSONATION_STARTS.labels(status="started").inc()
            logger.info(
                "rate_limit.session_started",
                session_id=str(session.session_id),
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
            )
            return session

    async def record_impersonation_end(self, session_id: UUID | str, tenant_id: str) -> bool:
        """End a session; returns ``False`` when it is not active in ``tenant_id``."""

        parsed = _parse_session_id(session_id)
        _require("tenant_id", tenant_id)
        entry = await self._close(parsed, tenant_id, SessionOutcome.ENDED)
        if entry is None:
            logger.debug(
                "rate_limit.session_end_noop", session_id=str(parsed), tenant_id=tenant_id
            )
            return False
        logger.info(
            "rate_limit.session_ended",
            session_id=str(parsed),
            tenant_id=tenant_id,
            duration_seconds=entry.duration_seconds,
        )
        return True

    async def check_session_duration_exceeded(
        self,
        session_id: UUID | str,
        tenant_id: str,
    ) -> bool:
        parsed = _parse_session_id(session_id)
        _require("tenant_id", tenant_id)
        session = await self._repository.get_session(session_id=parsed, tenant_id=tenant_id)
        if session is None:
            return False
        elapsed = self._clock() - session.started_at
        return elapsed > timedelta(minutes=self._config.max_session_duration_minutes)

    async def force_terminate_session(
        self,
        session_id: UUID | str,
        tenant_id: str,
        reason: str,
    ) -> bool:
        """Administrative override that ends a session regardless of its age."""

        parsed = _parse_session_id(session_id)
        _require("tenant_id", tenant_id)
        _require("reason", reason, MAX_REASON_LENGTH)
        with tracer.start_as_current_span("rate_limit.force_terminate"):
            entry = await self._close(
                parsed, tenant_id, SessionOutcome.FORCE_TERMINATED, reason=reason
            )
        if entry is None:
            return False
        logger.warning(
            "rate_limit.session_force_terminated",
            session_id=str(parsed),
            tenant_id=tenant_id,
            super_admin_id=entry.super_admin_id,
            reason=reason,
        )
        return True

    async def cleanup_expired_sessions(
        self,
        tenant_id: str,
        days_to_keep: int = 90,
    ) -> CleanupResult:
        """Expire overdue sessions and prune old violations for one tenant."""

        _require("tenant_id", tenant_id)
        _require_days("days_to_keep", days_to_keep)

        with tracer.start_as_current_span("rate_limit.cleanup"):
            now = self._clock()
            max_duration = timedelta(minutes=self._config.max_session_duration_minutes)
            overdue = await self._repository.list_sessions_started_before(
                tenant_id=tenant_id, cutoff=now - max_duration
            )

            expired = 0
            for session in overdue:
                entry = await self._close(
                    session.session_id,
                    tenant_id,
                    SessionOutcome.EXPIRED,
                    reason=EXPIRED_SESSION_REASON,
                    ended_at=now,
                )
                if entry is None:
                    continue
                expired += 1
                logger.info(
                    "rate_limit.session_expired",
                    session_id=str(session.session_id),
                    tenant_id=tenant_id,
                    super_admin_id=session.super_admin_id,
                    duration_seconds=entry.duration_seconds,
                )
                await self._record_violation(
                    RateLimitViolationCreate(
                        super_admin_id=session.super_admin_id,
                        tenant_id=tenant_id,
                        violation_type=ViolationType.DURATION,
                        severity=ViolationSeverity.WARNING,
                        target_user_id=session.target_user_id,
                        session_id=session.session_id,
                        limit_value=self._config.max_session_duration_minutes,
                        observed_value=entry.duration_seconds // 60,
                        message=(
                            f"Session ran {entry.duration_seconds // 60} minutes, "
                            f"limit is {self._config.max_session_duration_minutes}"
                        ),
                    ),
                    occurred_at=now,
                )

            retention_cutoff = now - timedelta(days=days_to_keep)
            violations_pruned = await self._repository.delete_violations(
                tenant_id=tenant_id, before=retention_cutoff
            )
            # never prune starts still counted by the quota window
            start_events_pruned = await self._repository.delete_start_events(
                tenant_id=tenant_id,
                before=min(retention_cutoff, window_start(self._config, now)),
            )

        result = CleanupResult(
            tenant_id=tenant_id,
            sessions_expired=expired,
            violations_pruned=violations_pruned,
            start_events_pruned=start_events_pruned,
        )
        if expired or violations_pruned or start_events_pruned:
            logger.info("rate_limit.cleanup_completed", **result.model_dump())
        return result

    async def reset_rate_limits(
        self,
        super_admin_id: str,
        tenant_id: str,
        reason: str,
    ) -> ResetConfirmation:
        """Clear sessions, start history and violations of one admin in one tenant."""

        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        _require("reason", reason, MAX_REASON_LENGTH)

        with tracer.start_as_current_span("rate_limit.reset"):
            now = self._clock()
            sessions = await self._repository.list_active_sessions(
                tenant_id=tenant_id, super_admin_id=super_admin_id
            )
            cleared = 0
            for session in sessions:
                entry = await self._close(
                    session.session_id,
                    tenant_id,
                    SessionOutcome.RESET,
                    reason=reason,
                    ended_at=now,
                )
                if entry is not None:
                    cleared += 1
            violations_cleared = await self._repository.delete_violations(
                tenant_id=tenant_id, super_admin_id=super_admin_id
            )
            start_events_cleared = await self._repository.delete_start_events(
                tenant_id=tenant_id, super_admin_id=super_admin_id
            )

        logger.warning(
            "rate_limit.reset",
            super_admin_id=super_admin_id,
            tenant_id=tenant_id,
            reason=reason,
            sessions_cleared=cleared,
            violations_cleared=violations_cleared,
        )
        return ResetConfirmation(
            super_admin_id=super_admin_id,
            tenant_id=tenant_id,
            reason=reason,
            sessions_cleared=cleared,
            violations_cleared=violations_cleared,
            start_events_cleared=start_events_cleared,
            reset_at=now,
        )

    async def clear_violations(self, super_admin_id: str, tenant_id: str) -> int:
        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        removed = await self._repository.delete_violations(
            tenant_id=tenant_id, super_admin_id=super_admin_id
        )
        logger.info(
            "rate_limit.violations_cleared",
            super_admin_id=super_admin_id,
            tenant_id=tenant_id,
            removed=removed,
        )
        return removed

    async def get_rate_limit_stats(self, super_admin_id: str, tenant_id: str) -> RateLimitStats:
        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        now = self._clock()
        usage = await self._repository.load_usage(
            super_admin_id=super_admin_id,
            tenant_id=tenant_id,
            window_start=window_start(self._config, now),
        )
        violation_count = await self._repository.count_violations(
            tenant_id=tenant_id, super_admin_id=super_admin_id
        )
        return build_stats(
            self._config,
            usage,
            super_admin_id=super_admin_id,
            tenant_id=tenant_id,
            violation_count=violation_count,
            now=now,
        )

    async def get_active_sessions(self, super_admin_id: str, tenant_id: str) -> list[ActiveSession]:
        """Live sessions of the admin, oldest first."""

        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        return await self._repository.list_active_sessions(
            tenant_id=tenant_id, super_admin_id=super_admin_id
        )

    async def get_violations(
        self,
        super_admin_id: str,
        tenant_id: str,
        limit_days: int = 30,
    ) -> list[RateLimitViolation]:
        """Violations from the trailing ``limit_days`` days, newest first."""

        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        _require_days("limit_days", limit_days)
        return await self._repository.list_violations(
            tenant_id=tenant_id,
            super_admin_id=super_admin_id,
            since=self._clock() - timedelta(days=limit_days),
        )

    async def get_session_history(
        self,
        super_admin_id: str,
        tenant_id: str,
        limit_days: int = 30,
    ) -> list[SessionHistoryEntry]:
        _require("super_admin_id", super_admin_id)
        _require("tenant_id", tenant_id)
        _require_days("limit_days", limit_days)
        return await self._repository.list_session_history(
            tenant_id=tenant_id,
            super_admin_id=super_admin_id,
            since=self._clock() - timedelta(days=limit_days),
        )

    async def _close(
        self,
        session_id: UUID,
        tenant_id: str,
        outcome: SessionOutcome,
        *,
        reason: str | None = None,
        ended_at: datetime | None = None,
    ) -> SessionHistoryEntry | None:
        entry = await self._repository.close_session(
            session_id=session_id,
            tenant_id=tenant_id,
            outcome=outcome,
            ended_at=ended_at or self._clock(),
            reason=reason,
        )
        if entry is not None:
            SESSION_TERMINATIONS.labels(outcome=outcome.value).inc()
        return entry

    async def _record_quota_violation(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
        result: RateLimitCheckResult,
        occurred_at: datetime,
    ) -> RateLimitViolation:
        return await self._record_violation(
            RateLimitViolationCreate(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                violation_type=result.violation_type,
                severity=ViolationSeverity.ERROR,
                target_user_id=target_user_id,
                limit_value=result.limit_value,
                observed_value=result.observed_value,
                message=result.reason,
            ),
            occurred_at=occurred_at,
        )

    async def _record_violation(
        self,
        payload: RateLimitViolationCreate,
        *,
        occurred_at: datetime,
    ) -> RateLimitViolation:
        violation = await self._repository.record_violation(
            payload=payload, occurred_at=occurred_at
        )
        RATE_LIMIT_VIOLATIONS.labels(violation_type=payload.violation_type.value).inc()
        return violation
