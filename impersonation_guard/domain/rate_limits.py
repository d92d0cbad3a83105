"""Domain models describing impersonation rate limiting state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class ViolationType(str, Enum):
    """Rule that a rejected or overdue impersonation breached."""

    HOURLY = "hourly"
    CONCURRENT = "concurrent"
    DURATION = "duration"


class ViolationSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class SessionOutcome(str, Enum):
    """Terminal states of an impersonation session."""

    ENDED = "ended"
    FORCE_TERMINATED = "force_terminated"
    EXPIRED = "expired"
    RESET = "reset"


class RateLimitConfig(BaseModel):
    """Limits applied to every super admin, fixed for the lifetime of the process."""

    max_impersonations_per_hour: int = Field(default=10, ge=1)
    max_concurrent_sessions: int = Field(default=5, ge=1)
    max_session_duration_minutes: int = Field(default=30, ge=1)
    window_minutes: int = Field(
        default=60,
        ge=1,
        description="Rolling window used to count impersonation starts",
    )
    enabled: bool = Field(
        default=True,
        description="Disabled limits still track usage but never reject a check",
    )
    warning_threshold_percent: float = Field(default=80.0, gt=0, le=100)

    class Config:
        frozen = True


class ActiveSession(BaseModel):
    """An impersonation currently in progress."""

    session_id: UUID = Field(default_factory=uuid4)
    super_admin_id: str
    tenant_id: str
    target_user_id: str
    target_user_email: str
    started_at: datetime
    expires_at: datetime = Field(
        description="Moment the session exceeds the maximum duration",
    )

    class Config:
        from_attributes = True


class SessionHistoryEntry(BaseModel):
    """A terminated impersonation kept for compliance reporting."""

    session_id: UUID
    super_admin_id: str
    tenant_id: str
    target_user_id: str
    target_user_email: str
    started_at: datetime
    ended_at: datetime
    outcome: SessionOutcome
    reason: str | None = Field(
        default=None,
        description="Operator supplied reason for forced terminations and resets",
    )
    duration_seconds: int = Field(ge=0)

    class Config:
        from_attributes = True


class RateLimitViolationCreate(BaseModel):
    """Details captured when a limit is breached."""

    super_admin_id: str
    tenant_id: str
    violation_type: ViolationType
    severity: ViolationSeverity = ViolationSeverity.ERROR
    target_user_id: Optional[str] = None
    session_id: Optional[UUID] = None
    limit_value: int = Field(ge=0)
    observed_value: int = Field(ge=0)
    message: Optional[str] = Field(default=None, max_length=500)


class RateLimitViolation(BaseModel):
    """Immutable record of a rate limit breach."""

    violation_id: UUID = Field(default_factory=uuid4)
    super_admin_id: str
    tenant_id: str
    violation_type: ViolationType
    severity: ViolationSeverity
    occurred_at: datetime
    target_user_id: str | None = None
    session_id: UUID | None = None
    limit_value: int
    observed_value: int
    message: str | None = None

    class Config:
        from_attributes = True


class QuotaUsage(BaseModel):
    """Raw usage for one admin in one tenant, as read from the store."""

    window_starts: list[datetime] = Field(
        default_factory=list,
        description="Start times of impersonations inside the quota window",
    )
    active_started_at: list[datetime] = Field(
        default_factory=list,
        description="Start times of the sessions that are still active",
    )


class RateLimitCheckResult(BaseModel):
    """Outcome of evaluating whether an impersonation may start."""

    allowed: bool = Field(
        description="Whether the impersonation is permitted under the configured limits",
    )
    reason: str | None = None
    violation_type: ViolationType | None = None
    impersonations_this_hour: int = Field(ge=0)
    hourly_limit: int = Field(ge=0)
    concurrent_sessions: int = Field(ge=0)
    concurrent_limit: int = Field(ge=0)
    remaining_impersonations: int = Field(
        ge=0,
        description="Starts still available inside the current window",
    )
    remaining_concurrent_slots: int = Field(ge=0)
    reset_at: datetime | None = Field(
        default=None,
        description="When the binding limit frees up capacity",
    )
    retry_after_seconds: int = Field(
        default=0,
        ge=0,
        description="Seconds until a rejected caller should retry",
    )

    @property
    def limit_value(self) -> int:
        if self.violation_type == ViolationType.HOURLY:
            return self.hourly_limit
        return self.concurrent_limit

    @property
    def observed_value(self) -> int:
        if self.violation_type == ViolationType.HOURLY:
            return self.impersonations_this_hour
        return self.concurrent_sessions


class RateLimitStats(BaseModel):
    """Usage projection for dashboards."""

    super_admin_id: str
    tenant_id: str
    impersonations_this_hour: int = 0
    hourly_limit: int
    concurrent_sessions: int = 0
    concurrent_limit: int
    max_session_duration_minutes: int
    hourly_usage_percent: float = 0.0
    concurrent_usage_percent: float = 0.0
    remaining_impersonations: int
    remaining_concurrent_slots: int
    oldest_session_age_minutes: float = 0.0
    next_reset_at: datetime | None = None
    violation_count: int = 0
    is_near_hourly_limit: bool = False
    is_near_concurrent_limit: bool = False
    is_rate_limited: bool = False
    checked_at: datetime


class CleanupResult(BaseModel):
    tenant_id: str
    sessions_expired: int = 0
    violations_pruned: int = 0
    start_events_pruned: int = 0


class ResetConfirmation(BaseModel):
    """Summary returned after an administrative reset."""

    super_admin_id: str
    tenant_id: str
    reason: str
    sessions_cleared: int = 0
    violations_cleared: int = 0
    start_events_cleared: int = 0
    reset_at: datetime


class RateLimitExceededPayload(BaseModel):
    """Structured error payload returned when an impersonation is rejected."""

    message: str = Field(default="Impersonation rate limit exceeded")
    violation_type: ViolationType | None = None
    limit: int = Field(description="The enforced cap for the violated rule", ge=0)
    observed: int = Field(description="Usage observed when the request was evaluated", ge=0)
    retry_after: int = Field(
        description="Seconds until clients should retry the blocked action",
        ge=0,
    )
