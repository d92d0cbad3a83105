"""Storage for impersonation sessions, start events, history and violations."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, DefaultDict, Protocol, Tuple
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import RateLimitBackendUnavailable
from ..domain.rate_limits import (
    ActiveSession,
    QuotaUsage,
    RateLimitCheckResult,
    RateLimitViolation,
    RateLimitViolationCreate,
    SessionHistoryEntry,
    SessionOutcome,
)
from ..models.impersonation import (
    ImpersonationQuotaLockModel,
    ImpersonationSessionHistoryModel,
    ImpersonationSessionModel,
    ImpersonationStartEventModel,
    RateLimitViolationModel,
)

logger = structlog.get_logger(__name__)

Admission = Callable[[QuotaUsage], RateLimitCheckResult]


class RateLimitRepository(Protocol):
    """Operations the rate limiter needs from its store.

    Every method is scoped by ``tenant_id``; implementations must never read
    or write rows that belong to another tenant.
    """

    async def load_usage(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        window_start: datetime,
    ) -> QuotaUsage:
        ...

    async def reserve_session(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
        target_user_email: str,
        started_at: datetime,
        expires_at: datetime,
        window_start: datetime,
        admit: Admission,
    ) -> tuple[RateLimitCheckResult, ActiveSession | None]:
        """Atomically re-evaluate usage and insert the session when admitted."""
        ...

    async def get_session(self, *, session_id: UUID, tenant_id: str) -> ActiveSession | None:
        ...

    async def close_session(
        self,
        *,
        session_id: UUID,
        tenant_id: str,
        outcome: SessionOutcome,
        ended_at: datetime,
        reason: str | None = None,
    ) -> SessionHistoryEntry | None:
        """Remove an active session, returning its history entry or ``None`` if absent."""
        ...

    async def list_active_sessions(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
    ) -> list[ActiveSession]:
        ...

    async def list_sessions_started_before(
        self,
        *,
        tenant_id: str,
        cutoff: datetime,
    ) -> list[ActiveSession]:
        ...

    async def record_violation(
        self,
        *,
        payload: RateLimitViolationCreate,
        occurred_at: datetime,
    ) -> RateLimitViolation:
        ...

    async def list_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[RateLimitViolation]:
        ...

    async def count_violations(self, *, tenant_id: str, super_admin_id: str) -> int:
        ...

    async def delete_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        ...

    async def delete_start_events(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        ...

    async def list_session_history(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[SessionHistoryEntry]:
        ...


def _history_entry(
    session: ActiveSession,
    *,
    outcome: SessionOutcome,
    ended_at: datetime,
    reason: str | None,
) -> SessionHistoryEntry:
    duration = max(int((ended_at - session.started_at).total_seconds()), 0)
    return SessionHistoryEntry(
        session_id=session.session_id,
        super_admin_id=session.super_admin_id,
        tenant_id=session.tenant_id,
        target_user_id=session.target_user_id,
        target_user_email=session.target_user_email,
        started_at=session.started_at,
        ended_at=ended_at,
        outcome=outcome,
        reason=reason,
        duration_seconds=duration,
    )


def _session_sort_key(session: ActiveSession) -> tuple[datetime, str]:
    return session.started_at, session.session_id.hex


class InMemoryRateLimitRepository:
    """Process-local store for development and tests.

    Starts are serialised with one ``asyncio.Lock`` per tenant and admin so
    concurrent reservations cannot overshoot the limits.
    """

    def __init__(self) -> None:
        self._sessions: dict[UUID, ActiveSession] = {}
        self._start_events: DefaultDict[Tuple[str, str], list[datetime]] = defaultdict(list)
        self._history: DefaultDict[str, list[SessionHistoryEntry]] = defaultdict(list)
        self._violations: DefaultDict[str, list[RateLimitViolation]] = defaultdict(list)
        self._locks: DefaultDict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def _usage(self, super_admin_id: str, tenant_id: str, window_start: datetime) -> QuotaUsage:
        starts = [
            started
            for started in self._start_events.get((tenant_id, super_admin_id), [])
            if started > window_start
        ]
        active = [
            session.started_at
            for session in self._sessions.values()
            if session.tenant_id == tenant_id and session.super_admin_id == super_admin_id
        ]
        return QuotaUsage(window_starts=starts, active_started_at=active)

    async def load_usage(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        window_start: datetime,
    ) -> QuotaUsage:
        return self._usage(super_admin_id, tenant_id, window_start)

    async def reserve_session(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
        target_user_email: str,
        started_at: datetime,
        expires_at: datetime,
        window_start: datetime,
        admit: Admission,
    ) -> tuple[RateLimitCheckResult, ActiveSession | None]:
        async with self._locks[(tenant_id, super_admin_id)]:
            decision = admit(self._usage(super_admin_id, tenant_id, window_start))
            if not decision.allowed:
                return decision, None
            session = ActiveSession(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
                target_user_email=target_user_email,
                started_at=started_at,
                expires_at=expires_at,
            )
            self._sessions[session.session_id] = session
            self._start_events[(tenant_id, super_admin_id)].append(started_at)
            return decision, session

    async def get_session(self, *, session_id: UUID, tenant_id: str) -> ActiveSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.tenant_id != tenant_id:
            return None
        return session

    async def close_session(
        self,
        *,
        session_id: UUID,
        tenant_id: str,
        outcome: SessionOutcome,
        ended_at: datetime,
        reason: str | None = None,
    ) -> SessionHistoryEntry | None:
        session = self._sessions.get(session_id)
        if session is None or session.tenant_id != tenant_id:
            return None
        del self._sessions[session_id]
        entry = _history_entry(session, outcome=outcome, ended_at=ended_at, reason=reason)
        self._history[tenant_id].append(entry)
        return entry

    async def list_active_sessions(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
    ) -> list[ActiveSession]:
        sessions = [
            session
            for session in self._sessions.values()
            if session.tenant_id == tenant_id and session.super_admin_id == super_admin_id
        ]
        return sorted(sessions, key=_session_sort_key)

    async def list_sessions_started_before(
        self,
        *,
        tenant_id: str,
        cutoff: datetime,
    ) -> list[ActiveSession]:
        sessions = [
            session
            for session in self._sessions.values()
            if session.tenant_id == tenant_id and session.started_at < cutoff
        ]
        return sorted(sessions, key=_session_sort_key)

    async def record_violation(
        self,
        *,
        payload: RateLimitViolationCreate,
        occurred_at: datetime,
    ) -> RateLimitViolation:
        violation = RateLimitViolation(occurred_at=occurred_at, **payload.model_dump())
        self._violations[payload.tenant_id].append(violation)
        return violation

    async def list_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[RateLimitViolation]:
        results = [
            violation
            for violation in self._violations.get(tenant_id, [])
            if violation.super_admin_id == super_admin_id and violation.occurred_at >= since
        ]
        # newest first; list order breaks ties between equal timestamps
        return list(reversed(sorted(results, key=lambda item: item.occurred_at)))

    async def count_violations(self, *, tenant_id: str, super_admin_id: str) -> int:
        return sum(
            1
            for violation in self._violations.get(tenant_id, [])
            if violation.super_admin_id == super_admin_id
        )

    async def delete_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        existing = self._violations.get(tenant_id, [])
        kept = [
            violation
            for violation in existing
            if not (
                (super_admin_id is None or violation.super_admin_id == super_admin_id)
                and (before is None or violation.occurred_at < before)
            )
        ]
        self._violations[tenant_id] = kept
        return len(existing) - len(kept)

    async def delete_start_events(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        removed = 0
        for key in list(self._start_events):
            key_tenant, key_admin = key
            if key_tenant != tenant_id:
                continue
            if super_admin_id is not None and key_admin != super_admin_id:
                continue
            events = self._start_events[key]
            kept = [started for started in events if before is not None and started >= before]
            removed += len(events) - len(kept)
            if kept:
                self._start_events[key] = kept
                continue
            del self._start_events[key]
            lock = self._locks.get(key)
            if lock is not None and not lock.locked() and not self._has_sessions(key):
                del self._locks[key]
        return removed

    def _has_sessions(self, key: Tuple[str, str]) -> bool:
        tenant_id, super_admin_id = key
        return any(
            session.tenant_id == tenant_id and session.super_admin_id == super_admin_id
            for session in self._sessions.values()
        )

    async def list_session_history(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[SessionHistoryEntry]:
        results = [
            entry
            for entry in self._history.get(tenant_id, [])
            if entry.super_admin_id == super_admin_id and entry.ended_at >= since
        ]
        return list(reversed(sorted(results, key=lambda item: item.ended_at)))


class SqlAlchemyRateLimitRepository:
    """Persists rate limiter state to Postgres (or SQLite in tests).

    A session start locks the ``impersonation_quota_locks`` row of the admin
    and tenant, recounts usage and inserts the session in the same
    transaction, so two concurrent starts can never both take the last slot.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (OperationalError, InterfaceError) as exc:
            try:
                await self._session.rollback()
            except SQLAlchemyError:
                logger.warning("rate_limit.rollback_failed", operation=operation)
            logger.error(
                "rate_limit.backend_unavailable",
                operation=operation,
                error=str(exc),
            )
            raise RateLimitBackendUnavailable(operation) from exc

    async def _acquire_quota_lock(self, *, tenant_id: str, super_admin_id: str) -> None:
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            insert_stmt = pg_insert(ImpersonationQuotaLockModel)
        elif dialect == "sqlite":
            insert_stmt = sqlite_insert(ImpersonationQuotaLockModel)
        else:
            raise RuntimeError(f"Unsupported database dialect for quota locks: {dialect}")
        await self._session.execute(
            insert_stmt.values(
                tenant_id=tenant_id, super_admin_id=super_admin_id, version=0
            ).on_conflict_do_nothing(index_elements=["tenant_id", "super_admin_id"])
        )
        # The row lock taken here is held until commit or rollback.
        await self._session.execute(
            update(ImpersonationQuotaLockModel)
            .where(
                ImpersonationQuotaLockModel.tenant_id == tenant_id,
                ImpersonationQuotaLockModel.super_admin_id == super_admin_id,
            )
            .values(version=ImpersonationQuotaLockModel.version + 1)
            .execution_options(synchronize_session=False)
        )

    async def _read_usage(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        window_start: datetime,
    ) -> QuotaUsage:
        starts = await self._session.execute(
            select(ImpersonationStartEventModel.started_at).where(
                ImpersonationStartEventModel.tenant_id == tenant_id,
                ImpersonationStartEventModel.super_admin_id == super_admin_id,
                ImpersonationStartEventModel.started_at > window_start,
            )
        )
        active = await self._session.execute(
            select(ImpersonationSessionModel.started_at).where(
                ImpersonationSessionModel.tenant_id == tenant_id,
                ImpersonationSessionModel.super_admin_id == super_admin_id,
            )
        )
        return QuotaUsage(
            window_starts=list(starts.scalars().all()),
            active_started_at=list(active.scalars().all()),
        )

    async def load_usage(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        window_start: datetime,
    ) -> QuotaUsage:
        async with self._guard("load_usage"):
            return await self._read_usage(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                window_start=window_start,
            )

    async def reserve_session(
        self,
        *,
        super_admin_id: str,
        tenant_id: str,
        target_user_id: str,
        target_user_email: str,
        started_at: datetime,
        expires_at: datetime,
        window_start: datetime,
        admit: Admission,
    ) -> tuple[RateLimitCheckResult, ActiveSession | None]:
        async with self._guard("reserve_session"):
            await self._acquire_quota_lock(tenant_id=tenant_id, super_admin_id=super_admin_id)
            usage = await self._read_usage(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                window_start=window_start,
            )
            decision = admit(usage)
            if not decision.allowed:
                await self._session.rollback()
                return decision, None

            model = ImpersonationSessionModel(
                super_admin_id=super_admin_id,
                tenant_id=tenant_id,
                target_user_id=target_user_id,
                target_user_email=target_user_email,
                started_at=started_at,
                expires_at=expires_at,
            )
            self._session.add(model)
            await self._session.flush()
            self._session.add(
                ImpersonationStartEventModel(
                    super_admin_id=super_admin_id,
                    tenant_id=tenant_id,
                    session_id=model.session_id,
                    started_at=started_at,
                )
            )
            session = ActiveSession.model_validate(model)
            await self._session.commit()
            return decision, session

    async def get_session(self, *, session_id: UUID, tenant_id: str) -> ActiveSession | None:
        async with self._guard("get_session"):
            result = await self._session.execute(
                select(ImpersonationSessionModel).where(
                    ImpersonationSessionModel.session_id == session_id,
                    ImpersonationSessionModel.tenant_id == tenant_id,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return ActiveSession.model_validate(model)

    async def close_session(
        self,
        *,
        session_id: UUID,
        tenant_id: str,
        outcome: SessionOutcome,
        ended_at: datetime,
        reason: str | None = None,
    ) -> SessionHistoryEntry | None:
        async with self._guard("close_session"):
            result = await self._session.execute(
                select(ImpersonationSessionModel).where(
                    ImpersonationSessionModel.session_id == session_id,
                    ImpersonationSessionModel.tenant_id == tenant_id,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                await self._session.rollback()
                return None
            session = ActiveSession.model_validate(model)

            deleted = await self._session.execute(
                delete(ImpersonationSessionModel)
                .where(
                    ImpersonationSessionModel.session_id == session_id,
                    ImpersonationSessionModel.tenant_id == tenant_id,
                )
                .execution_options(synchronize_session=False)
            )
            if deleted.rowcount == 0:
                # Another caller closed it between the select and the delete.
                await self._session.rollback()
                return None
            self._session.expunge(model)

            entry = _history_entry(session, outcome=outcome, ended_at=ended_at, reason=reason)
            self._session.add(
                ImpersonationSessionHistoryModel(
                    session_id=entry.session_id,
                    super_admin_id=entry.super_admin_id,
                    tenant_id=entry.tenant_id,
                    target_user_id=entry.target_user_id,
                    target_user_email=entry.target_user_email,
                    started_at=entry.started_at,
                    ended_at=entry.ended_at,
                    outcome=entry.outcome.value,
                    reason=entry.reason,
                    duration_seconds=entry.duration_seconds,
                )
            )
            await self._session.commit()
            return entry

    async def list_active_sessions(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
    ) -> list[ActiveSession]:
        async with self._guard("list_active_sessions"):
            result = await self._session.execute(
                select(ImpersonationSessionModel)
                .where(
                    ImpersonationSessionModel.tenant_id == tenant_id,
                    ImpersonationSessionModel.super_admin_id == super_admin_id,
                )
                .order_by(
                    ImpersonationSessionModel.started_at.asc(),
                    ImpersonationSessionModel.session_id.asc(),
                )
            )
            return [ActiveSession.model_validate(row) for row in result.scalars().all()]

    async def list_sessions_started_before(
        self,
        *,
        tenant_id: str,
        cutoff: datetime,
    ) -> list[ActiveSession]:
        async with self._guard("list_sessions_started_before"):
            result = await self._session.execute(
                select(ImpersonationSessionModel)
                .where(
                    ImpersonationSessionModel.tenant_id == tenant_id,
                    ImpersonationSessionModel.started_at < cutoff,
                )
                .order_by(
                    ImpersonationSessionModel.started_at.asc(),
                    ImpersonationSessionModel.session_id.asc(),
                )
            )
            return [ActiveSession.model_validate(row) for row in result.scalars().all()]

    async def record_violation(
        self,
        *,
        payload: RateLimitViolationCreate,
        occurred_at: datetime,
    ) -> RateLimitViolation:
        async with self._guard("record_violation"):
            model = RateLimitViolationModel(
                super_admin_id=payload.super_admin_id,
                tenant_id=payload.tenant_id,
                violation_type=payload.violation_type.value,
                severity=payload.severity.value,
                occurred_at=occurred_at,
                target_user_id=payload.target_user_id,
                session_id=payload.session_id,
                limit_value=payload.limit_value,
                observed_value=payload.observed_value,
                message=payload.message,
            )
            self._session.add(model)
            await self._session.flush()
            violation = RateLimitViolation.model_validate(model)
            await self._session.commit()
            return violation

    async def list_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[RateLimitViolation]:
        async with self._guard("list_violations"):
            result = await self._session.execute(
                select(RateLimitViolationModel)
                .where(
                    RateLimitViolationModel.tenant_id == tenant_id,
                    RateLimitViolationModel.super_admin_id == super_admin_id,
                    RateLimitViolationModel.occurred_at >= since,
                )
                .order_by(RateLimitViolationModel.occurred_at.desc())
            )
            return [RateLimitViolation.model_validate(row) for row in result.scalars().all()]

    async def count_violations(self, *, tenant_id: str, super_admin_id: str) -> int:
        async with self._guard("count_violations"):
            result = await self._session.execute(
                select(func.count())
                .select_from(RateLimitViolationModel)
                .where(
                    RateLimitViolationModel.tenant_id == tenant_id,
                    RateLimitViolationModel.super_admin_id == super_admin_id,
                )
            )
            return int(result.scalar_one())

    async def delete_violations(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        query = delete(RateLimitViolationModel).where(
            RateLimitViolationModel.tenant_id == tenant_id
        )
        if super_admin_id is not None:
            query = query.where(RateLimitViolationModel.super_admin_id == super_admin_id)
        if before is not None:
            query = query.where(RateLimitViolationModel.occurred_at < before)
        async with self._guard("delete_violations"):
            result = await self._session.execute(
                query.execution_options(synchronize_session=False)
            )
            await self._session.commit()
            return result.rowcount or 0

    async def delete_start_events(
        self,
        *,
        tenant_id: str,
        super_admin_id: str | None = None,
        before: datetime | None = None,
    ) -> int:
        query = delete(ImpersonationStartEventModel).where(
            ImpersonationStartEventModel.tenant_id == tenant_id
        )
        if super_admin_id is not None:
            query = query.where(ImpersonationStartEventModel.super_admin_id == super_admin_id)
        if before is not None:
            query = query.where(ImpersonationStartEventModel.started_at < before)
        async with self._guard("delete_start_events"):
            result = await self._session.execute(
                query.execution_options(synchronize_session=False)
            )
            await self._session.commit()
            return result.rowcount or 0

    async def list_session_history(
        self,
        *,
        tenant_id: str,
        super_admin_id: str,
        since: datetime,
    ) -> list[SessionHistoryEntry]:
        async with self._guard("list_session_history"):
            result = await self._session.execute(
                select(ImpersonationSessionHistoryModel)
                .where(
                    ImpersonationSessionHistoryModel.tenant_id == tenant_id,
                    ImpersonationSessionHistoryModel.super_admin_id == super_admin_id,
                    ImpersonationSessionHistoryModel.ended_at >= since,
                )
                .order_by(ImpersonationSessionHistoryModel.ended_at.desc())
            )
            return [SessionHistoryEntry.model_validate(row) for row in result.scalars().all()]
