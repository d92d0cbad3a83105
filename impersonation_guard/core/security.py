"""JWT helpers used to identify super-admin callers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable

from jose import jwt

from .config import get_settings

ALGORITHM = "HS256"
SUPER_ADMIN_ROLE = "super_admin"
ALL_TENANTS = "*"


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT access token for the provided payload."""

    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def create_super_admin_token(
    super_admin_id: str,
    tenants: Iterable[str],
    expires_delta: timedelta | None = None,
) -> str:
    """Issue a token granting super-admin authority over the listed tenants."""

    return create_access_token(
        {"sub": super_admin_id, "role": SUPER_ADMIN_ROLE, "tenants": list(tenants)},
        expires_delta=expires_delta,
    )


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode a JWT access token and return its payload."""

    settings = get_settings()
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


def token_covers_tenant(payload: dict[str, Any], tenant_id: str) -> bool:
    """Return whether the decoded token grants authority over ``tenant_id``."""

    tenants = payload.get("tenants") or []
    if isinstance(tenants, str):
        tenants = [tenants]
    return ALL_TENANTS in tenants or tenant_id in tenants
