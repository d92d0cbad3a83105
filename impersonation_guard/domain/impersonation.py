"""Request and response schemas for the impersonation endpoints."""

from __future__ import annotations

from pydantic import BaseModel, EmailStr, Field

from .rate_limits import (
    ActiveSession,
    CleanupResult,
    RateLimitCheckResult,
    RateLimitConfig,
    RateLimitStats,
    RateLimitViolation,
    ResetConfirmation,
    SessionHistoryEntry,
)


class ImpersonationCheckRequest(BaseModel):
    target_user_id: str = Field(..., min_length=1, max_length=255)


class ImpersonationStartRequest(BaseModel):
    """Payload for starting an impersonation of a tenant user."""

    target_user_id: str = Field(..., min_length=1, max_length=255)
    target_user_email: EmailStr = Field(..., description="Email of the impersonated user")


class ReasonRequest(BaseModel):
    """Operator supplied justification for administrative overrides."""

    reason: str = Field(..., min_length=3, max_length=500)


class RateLimitCheckResponse(BaseModel):
    data: RateLimitCheckResult


class ActiveSessionResponse(BaseModel):
    data: ActiveSession


class ActiveSessionListResponse(BaseModel):
    data: list[ActiveSession]
    count: int


class SessionHistoryListResponse(BaseModel):
    data: list[SessionHistoryEntry]
    count: int


class SessionEndResponse(BaseModel):
    ended: bool


class SessionTerminateResponse(BaseModel):
    terminated: bool


class DurationExceededResponse(BaseModel):
    exceeded: bool


class RateLimitStatsResponse(BaseModel):
    data: RateLimitStats


class ViolationListResponse(BaseModel):
    data: list[RateLimitViolation]
    count: int


class ViolationsClearedResponse(BaseModel):
    cleared: int


class CleanupResponse(BaseModel):
    data: CleanupResult


class ResetResponse(BaseModel):
    data: ResetConfirmation


class RateLimitConfigResponse(BaseModel):
    data: RateLimitConfig
