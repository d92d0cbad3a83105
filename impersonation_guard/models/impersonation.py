"""SQLAlchemy models for impersonation sessions and their quota bookkeeping."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..db.session import Base


class ImpersonationSessionModel(Base):
    """One row per live impersonation; deleted when the session terminates."""

    __tablename__ = "impersonation_sessions"
    __table_args__ = (
        Index("ix_impersonation_sessions_tenant_admin", "tenant_id", "super_admin_id"),
    )

    session_id: Mapped[UUID] = mapped_column("id", Uuid, primary_key=True, default=uuid4)
    super_admin_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class ImpersonationStartEventModel(Base):
    """Append-only log of session starts used to count the hourly quota."""

    __tablename__ = "impersonation_start_events"
    __table_args__ = (
        Index(
            "ix_impersonation_start_events_tenant_admin_started",
            "tenant_id",
            "super_admin_id",
            "started_at",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    super_admin_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class ImpersonationSessionHistoryModel(Base):
    """Terminated impersonations retained for compliance reporting."""

    __tablename__ = "impersonation_session_history"
    __table_args__ = (
        Index("ix_impersonation_history_tenant_admin", "tenant_id", "super_admin_id"),
    )

    session_id: Mapped[UUID] = mapped_column("id", Uuid, primary_key=True)
    super_admin_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    target_user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ended_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, index=True
    )
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class RateLimitViolationModel(Base):
    """Rate limit breaches, pruned by age."""

    __tablename__ = "rate_limit_violations"
    __table_args__ = (
        Index("ix_rate_limit_violations_tenant_admin", "tenant_id", "super_admin_id"),
    )

    violation_id: Mapped[UUID] = mapped_column("id", Uuid, primary_key=True, default=uuid4)
    super_admin_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    violation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), nullable=False, index=True
    )
    target_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    limit_value: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_value: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)


class ImpersonationQuotaLockModel(Base):
    """Per admin and tenant row locked while a session start is committed."""

    __tablename__ = "impersonation_quota_locks"
    __table_args__ = (
        UniqueConstraint("tenant_id", "super_admin_id", name="uq_quota_lock_tenant_admin"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    super_admin_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
