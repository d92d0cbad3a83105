"""SQLAlchemy ORM models used by the rate limiter store."""

from .impersonation import (
    ImpersonationQuotaLockModel,
    ImpersonationSessionHistoryModel,
    ImpersonationSessionModel,
    ImpersonationStartEventModel,
    RateLimitViolationModel,
)

__all__ = [
    "ImpersonationQuotaLockModel",
    "ImpersonationSessionHistoryModel",
    "ImpersonationSessionModel",
    "ImpersonationStartEventModel",
    "RateLimitViolationModel",
]
