from __future__ import annotations

from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...core.config import get_settings
from ...domain.auth import SuperAdminContext
from ...domain.impersonation import (
    ActiveSessionListResponse,
    ActiveSessionResponse,
    CleanupResponse,
    DurationExceededResponse,
    ImpersonationCheckRequest,
    ImpersonationStartRequest,
    RateLimitCheckResponse,
    RateLimitConfigResponse,
    RateLimitStatsResponse,
    ReasonRequest,
    ResetResponse,
    SessionEndResponse,
    SessionHistoryListResponse,
    SessionTerminateResponse,
    ViolationListResponse,
    ViolationsClearedResponse,
)
from ...domain.rate_limits import RateLimitCheckResult, RateLimitExceededPayload
from ...services.rate_limiter import ImpersonationRateLimiter
from ..dependencies import get_rate_limiter, get_super_admin_context

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/impersonation", tags=["impersonation"])


def exceeded_payload(result: RateLimitCheckResult) -> RateLimitExceededPayload:
    return RateLimitExceededPayload(
        message=result.reason or "Impersonation rate limit exceeded",
        violation_type=result.violation_type,
        limit=result.limit_value,
        observed=result.observed_value,
        retry_after=result.retry_after_seconds,
    )


@router.post("/rate-limit/check", response_model=RateLimitCheckResponse)
async def check_rate_limit(
    payload: ImpersonationCheckRequest,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> RateLimitCheckResponse:
    result = await limiter.check_impersonation_rate_limit(
        context.super_admin_id, context.tenant_id, payload.target_user_id
    )
    return RateLimitCheckResponse(data=result)


@router.post(
    "/sessions",
    response_model=ActiveSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_impersonation(
    payload: ImpersonationStartRequest,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> ActiveSessionResponse:
    result = await limiter.check_impersonation_rate_limit(
        context.super_admin_id, context.tenant_id, payload.target_user_id
    )
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=exceeded_payload(result).model_dump(mode="json"),
            headers={"Retry-After": str(result.retry_after_seconds)},
        )
    session = await limiter.record_impersonation_start(
        context.super_admin_id,
        context.tenant_id,
        payload.target_user_id,
        str(payload.target_user_email),
    )
    return ActiveSessionResponse(data=session)


@router.get("/sessions", response_model=ActiveSessionListResponse)
async def list_active_sessions(
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> ActiveSessionListResponse:
    sessions = await limiter.get_active_sessions(context.super_admin_id, context.tenant_id)
    return ActiveSessionListResponse(data=sessions, count=len(sessions))


@router.get("/sessions/history", response_model=SessionHistoryListResponse)
async def list_session_history(
    limit_days: int = Query(default=30, ge=1, le=365),
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> SessionHistoryListResponse:
    entries = await limiter.get_session_history(
        context.super_admin_id, context.tenant_id, limit_days=limit_days
    )
    return SessionHistoryListResponse(data=entries, count=len(entries))


@router.delete("/sessions/{session_id}", response_model=SessionEndResponse)
async def end_impersonation(
    session_id: UUID,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> SessionEndResponse:
    ended = await limiter.record_impersonation_end(session_id, context.tenant_id)
    return SessionEndResponse(ended=ended)


@router.get(
    "/sessions/{session_id}/duration-exceeded",
    response_model=DurationExceededResponse,
)
async def session_duration_exceeded(
    session_id: UUID,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> DurationExceededResponse:
    exceeded = await limiter.check_session_duration_exceeded(session_id, context.tenant_id)
    return DurationExceededResponse(exceeded=exceeded)


@router.post(
    "/sessions/{session_id}/terminate",
    response_model=SessionTerminateResponse,
)
async def force_terminate_session(
    session_id: UUID,
    payload: ReasonRequest,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> SessionTerminateResponse:
    terminated = await limiter.force_terminate_session(
        session_id, context.tenant_id, payload.reason
    )
    if terminated:
        logger.info(
            "audit.impersonation_force_terminated",
            actor_id=context.super_admin_id,
            tenant_id=context.tenant_id,
            session_id=str(session_id),
            reason=payload.reason,
        )
    return SessionTerminateResponse(terminated=terminated)


@router.get("/stats", response_model=RateLimitStatsResponse)
async def rate_limit_stats(
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> RateLimitStatsResponse:
    stats = await limiter.get_rate_limit_stats(context.super_admin_id, context.tenant_id)
    return RateLimitStatsResponse(data=stats)


@router.get("/violations", response_model=ViolationListResponse)
async def list_violations(
    limit_days: int = Query(default=30, ge=1, le=365),
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> ViolationListResponse:
    violations = await limiter.get_violations(
        context.super_admin_id, context.tenant_id, limit_days=limit_days
    )
    return ViolationListResponse(data=violations, count=len(violations))


@router.delete("/violations", response_model=ViolationsClearedResponse)
async def clear_violations(
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> ViolationsClearedResponse:
    cleared = await limiter.clear_violations(context.super_admin_id, context.tenant_id)
    return ViolationsClearedResponse(cleared=cleared)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired_sessions(
    days_to_keep: int | None = Query(default=None, ge=1, le=3650),
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> CleanupResponse:
    retention = days_to_keep or get_settings().violation_retention_days
    result = await limiter.cleanup_expired_sessions(context.tenant_id, days_to_keep=retention)
    return CleanupResponse(data=result)


@router.post("/reset", response_model=ResetResponse)
async def reset_rate_limits(
    payload: ReasonRequest,
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> ResetResponse:
    confirmation = await limiter.reset_rate_limits(
        context.super_admin_id, context.tenant_id, payload.reason
    )
    logger.info(
        "audit.impersonation_rate_limits_reset",
        actor_id=context.super_admin_id,
        tenant_id=context.tenant_id,
        reason=payload.reason,
        sessions_cleared=confirmation.sessions_cleared,
    )
    return ResetResponse(data=confirmation)


@router.get("/config", response_model=RateLimitConfigResponse)
async def rate_limit_config(
    context: SuperAdminContext = Depends(get_super_admin_context),
    limiter: ImpersonationRateLimiter = Depends(get_rate_limiter),
) -> RateLimitConfigResponse:
    return RateLimitConfigResponse(data=limiter.get_config())
