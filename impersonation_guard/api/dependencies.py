from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from ..core.config import get_settings
from ..core.security import SUPER_ADMIN_ROLE, decode_access_token, token_covers_tenant
from ..db import get_sessionmaker
from ..domain.auth import SuperAdminContext, SuperAdminPrincipal
from ..repositories.rate_limits import (
    InMemoryRateLimitRepository,
    RateLimitRepository,
    SqlAlchemyRateLimitRepository,
)
from ..services.rate_limiter import MAX_IDENTIFIER_LENGTH, ImpersonationRateLimiter

_http_bearer = HTTPBearer(auto_error=False)
_memory_repository = InMemoryRateLimitRepository()


def reset_memory_repository() -> InMemoryRateLimitRepository:
    """Swap in a fresh in-memory store, used when no database is configured."""

    global _memory_repository
    _memory_repository = InMemoryRateLimitRepository()
    return _memory_repository


async def get_rate_limit_repository() -> AsyncGenerator[RateLimitRepository, None]:
    settings = get_settings()
    if not settings.database_url:
        yield _memory_repository
        return
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        yield SqlAlchemyRateLimitRepository(session)


async def get_rate_limiter(
    repository: RateLimitRepository = Depends(get_rate_limit_repository),
) -> ImpersonationRateLimiter:
    return ImpersonationRateLimiter(repository, get_settings().rate_limit_config())


async def get_tenant_id(
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
) -> str:
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant header missing",
        )
    if len(x_tenant_id) > MAX_IDENTIFIER_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant header too long",
        )
    return x_tenant_id


async def get_super_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(_http_bearer),
) -> SuperAdminPrincipal:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        ) from exc
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
    if payload.get("role") != SUPER_ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin role required",
        )
    tenants = payload.get("tenants") or []
    if isinstance(tenants, str):
        tenants = [tenants]
    return SuperAdminPrincipal(super_admin_id=str(subject), tenants=list(tenants))


async def get_super_admin_context(
    tenant_id: str = Depends(get_tenant_id),
    principal: SuperAdminPrincipal = Depends(get_super_admin),
) -> SuperAdminContext:
    if not token_covers_tenant({"tenants": principal.tenants}, tenant_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No authority over tenant",
        )
    return SuperAdminContext(super_admin_id=principal.super_admin_id, tenant_id=tenant_id)
