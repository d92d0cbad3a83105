"""Identity of the caller resolved from the bearer token."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SuperAdminPrincipal(BaseModel):
    """Claims carried by a super-admin access token."""

    super_admin_id: str = Field(..., min_length=1)
    tenants: list[str] = Field(
        default_factory=list,
        description="Tenants the admin may act on; '*' grants every tenant",
    )


class SuperAdminContext(BaseModel):
    """A super admin acting on one tenant for the duration of a request."""

    super_admin_id: str
    tenant_id: str
