"""SQL stores implemented with SQLAlchemy async sessions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Sequence
from uuid import UUID

from sqlalchemy import bindparam, delete, func, insert, select, text, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .schema import PaymentAuthorizations, ScheduledJobs
from ...clock import Clock, SystemClock, ensure_utc
from ...contracts import AuthorizationStore, JobQuery, JobStore
from ...models import (
    TERMINAL_JOB_STATUSES,
    AuthorizationStatus,
    JobStatus,
    JobType,
    Participant,
    PaymentAuthorization,
    ScheduledJob,
    dedup_key,
    job_subtype,
)

logger = logging.getLogger(__name__)

_PENDING = JobStatus.PENDING.value
_RUNNING = JobStatus.RUNNING.value

_CLAIM_READY_PG = (
    text(
        """
        WITH picked AS (
            SELECT id FROM scheduled_jobs
            WHERE status='pending'
              AND type IN :types
              AND scheduled_at <= :now
              AND (lease_until IS NULL OR lease_until <= :now)
            ORDER BY priority ASC, scheduled_at ASC
            LIMIT :limit
            FOR UPDATE SKIP LOCKED
        )
        UPDATE scheduled_jobs sj
           SET leased_by=:owner,
               lease_until=:lease_until,
               version=sj.version+1
          FROM picked
         WHERE sj.id = picked.id
        RETURNING sj.*;
        """
    )
    .bindparams(bindparam("types", expanding=True))
    .columns(*ScheduledJobs.c)
)


class _SQLStore:
    engine: AsyncEngine
    clock: Clock

    def __init__(self, engine: AsyncEngine, *, clock: Clock | None = None) -> None:
        self.engine = engine
        self.clock = clock or SystemClock()
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"{type(self).__name__}(engine={self.engine.url!s})"

    async def check_connection(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def _retry_with_backoff(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
    ) -> Any:
        delay = base_delay
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except IntegrityError:
                raise
            except (DBAPIError, ConnectionError) as exc:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Transient store error on attempt %s/%s; retrying in %.2fs",
                    attempt,
                    attempts,
                    delay,
                    exc_info=exc,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)


class SQLJobStore(_SQLStore, JobStore):
    def __init__(
        self,
        engine: AsyncEngine,
        *,
        clock: Clock | None = None,
        prefer_pg_skip_locked: bool = True,
    ) -> None:
        super().__init__(engine, clock=clock)
        self.prefer_pg_skip_locked = prefer_pg_skip_locked
        self._warned_about_skip_locked = False

    async def create(self, job: ScheduledJob) -> tuple[ScheduledJob, bool]:
        key = job.dedup_key
        now = self.clock.now()
        values = dict(
            id=str(job.id),
            type=job.type.value,
            status=_PENDING,
            payment_authorization_id=job.payment_authorization_id,
            booking_id=job.booking_id,
            scheduled_at=job.scheduled_at,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            job_data=job.job_data,
            created_at=job.created_at or now,
            updated_at=now,
            version=0,
            active_key=key,
        )
        async with self.sessionmaker() as session:
            try:
                await session.execute(insert(ScheduledJobs).values(**values))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                row = (
                    await session.execute(
                        select(ScheduledJobs).where(ScheduledJobs.c.active_key == key)
                    )
                ).mappings().first()
                if row is None:
                    # The holder left pending between our insert and lookup.
                    raise
                logger.info("pending job already exists: key=%s job_id=%s", key, row["id"])
                return self._row_to_job(row), False
        stored = await self.get(job.id)
        if stored is None:
            raise RuntimeError(f"job {job.id} vanished after insert")
        return stored, True

    async def get(self, job_id: UUID) -> ScheduledJob | None:
        async with self.sessionmaker() as session:
            row = (
                await session.execute(
                    select(ScheduledJobs).where(ScheduledJobs.c.id == str(job_id))
                )
            ).mappings().first()
            return self._row_to_job(row) if row else None

    async def find_pending(
        self, authorization_id: int, job_type: JobType, subtype: str | None = None
    ) -> ScheduledJob | None:
        key = dedup_key(authorization_id, job_type, subtype)
        async with self.sessionmaker() as session:
            row = (
                await session.execute(
                    select(ScheduledJobs).where(ScheduledJobs.c.active_key == key)
                )
            ).mappings().first()
            return self._row_to_job(row) if row else None

    async def claim_ready(
        self, job_types: Sequence[JobType], *, limit: int, owner: UUID, lease_ttl_s: int
    ) -> List[ScheduledJob]:
        if self.engine.dialect.name == "postgresql" and self.prefer_pg_skip_locked:
            rows = await self._claim_ready_pg(job_types, limit, owner, lease_ttl_s)
        else:
            if not self._warned_about_skip_locked:
                logger.warning(
                    "Running without SKIP LOCKED; overlapping batches may select the same jobs"
                )
                self._warned_about_skip_locked = True
            rows = await self._claim_ready_generic(job_types, limit, owner, lease_ttl_s)
        jobs = [self._row_to_job(row) for row in rows]
        jobs.sort(key=lambda j: (j.priority, j.scheduled_at))
        return jobs

    async def _claim_ready_pg(
        self, job_types: Sequence[JobType], limit: int, owner: UUID, lease_ttl_s: int
    ) -> Iterable[Any]:
        now = self.clock.now()
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    _CLAIM_READY_PG,
                    {
                        "types": [t.value for t in job_types],
                        "now": now,
                        "limit": limit,
                        "owner": str(owner),
                        "lease_until": now + timedelta(seconds=lease_ttl_s),
                    },
                )
            ).mappings().all()
            await session.commit()
            return rows

    async def _claim_ready_generic(
        self, job_types: Sequence[JobType], limit: int, owner: UUID, lease_ttl_s: int
    ) -> Iterable[Any]:
        picked: list[Any] = []
        now = self.clock.now()
        lease_until = now + timedelta(seconds=lease_ttl_s)
        async with self.sessionmaker() as session:
            for _ in range(limit):
                query = (
                    select(ScheduledJobs)
                    .where(ScheduledJobs.c.status == _PENDING)
                    .where(ScheduledJobs.c.type.in_([t.value for t in job_types]))
                    .where(ScheduledJobs.c.scheduled_at <= now)
                    .where(
                        (ScheduledJobs.c.lease_until.is_(None))
                        | (ScheduledJobs.c.lease_until <= now)
                    )
                    .order_by(ScheduledJobs.c.priority.asc(), ScheduledJobs.c.scheduled_at.asc())
                    .limit(1)
                )
                row = (await session.execute(query)).mappings().first()
                if not row:
                    break
                stmt = (
                    update(ScheduledJobs)
                    .where(ScheduledJobs.c.id == row["id"])
                    .where(ScheduledJobs.c.version == row["version"])
                    .values(
                        leased_by=str(owner),
                        lease_until=lease_until,
                        version=ScheduledJobs.c.version + 1,
                    )
                )
                res = await session.execute(stmt)
                if res.rowcount:
                    await session.commit()
                    picked.append(row)
                else:
                    await session.rollback()
                    break
            return picked

    async def claim(self, job_id: UUID) -> ScheduledJob | None:
        now = self.clock.now()
        async with self.sessionmaker() as session:
            res = await session.execute(
                update(ScheduledJobs)
                .where(ScheduledJobs.c.id == str(job_id))
                .where(ScheduledJobs.c.status == _PENDING)
                .values(
                    status=_RUNNING,
                    attempts=ScheduledJobs.c.attempts + 1,
                    started_at=now,
                    updated_at=now,
                    lease_until=None,
                    leased_by=None,
                    active_key=None,
                    version=ScheduledJobs.c.version + 1,
                )
            )
            if not res.rowcount:
                await session.rollback()
                return None
            await session.commit()
        return await self.get(job_id)

    async def complete(self, job_id: UUID, result: dict) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, result=result)

    async def fail(self, job_id: UUID, message: str, result: dict | None = None) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, result=result, message=message)

    async def reschedule(
        self, job_id: UUID, scheduled_at: datetime, *, from_status: JobStatus
    ) -> bool:
        async with self.sessionmaker() as session:
            row = (
                await session.execute(
                    select(ScheduledJobs).where(ScheduledJobs.c.id == str(job_id))
                )
            ).mappings().first()
            if row is None or row["status"] != from_status.value:
                return False
            job_type = JobType(row["type"])
            key = dedup_key(
                row["payment_authorization_id"], job_type, job_subtype(job_type, row["job_data"])
            )
            try:
                res = await session.execute(
                    update(ScheduledJobs)
                    .where(ScheduledJobs.c.id == row["id"])
                    .where(ScheduledJobs.c.version == row["version"])
                    .values(
                        status=_PENDING,
                        scheduled_at=scheduled_at,
                        updated_at=self.clock.now(),
                        executed_at=None,
                        lease_until=None,
                        leased_by=None,
                        active_key=key,
                        version=ScheduledJobs.c.version + 1,
                    )
                )
            except IntegrityError:
                await session.rollback()
                logger.info("reschedule blocked by pending duplicate: job_id=%s key=%s", job_id, key)
                return False
            if not res.rowcount:
                await session.rollback()
                return False
            await session.commit()
            return True

    async def cancel(self, job_id: UUID, reason: str) -> bool:
        async with self.sessionmaker() as session:
            res = await session.execute(
                self._cancel_stmt(reason).where(ScheduledJobs.c.id == str(job_id))
            )
            await session.commit()
            return bool(res.rowcount)

    async def cancel_pending_for_authorization(self, authorization_id: int, reason: str) -> int:
        async with self.sessionmaker() as session:
            res = await session.execute(
                self._cancel_stmt(reason).where(
                    ScheduledJobs.c.payment_authorization_id == authorization_id
                )
            )
            await session.commit()
            return int(res.rowcount or 0)

    async def fail_stuck(self, running_since: datetime, message: str) -> List[UUID]:
        now = self.clock.now()
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(ScheduledJobs.c.id, ScheduledJobs.c.version)
                    .where(ScheduledJobs.c.status == _RUNNING)
                    .where(ScheduledJobs.c.updated_at < running_since)
                )
            ).mappings().all()
            failed: List[UUID] = []
            for row in rows:
                res = await session.execute(
                    update(ScheduledJobs)
                    .where(ScheduledJobs.c.id == row["id"])
                    .where(ScheduledJobs.c.version == row["version"])
                    .where(ScheduledJobs.c.status == _RUNNING)
                    .values(
                        status=JobStatus.FAILED.value,
                        error_message=message,
                        executed_at=now,
                        updated_at=now,
                        version=ScheduledJobs.c.version + 1,
                    )
                )
                if res.rowcount:
                    failed.append(UUID(row["id"]))
            await session.commit()
            return failed

    async def failed_retryable(self) -> List[ScheduledJob]:
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(ScheduledJobs)
                    .where(ScheduledJobs.c.status == JobStatus.FAILED.value)
                    .where(ScheduledJobs.c.attempts < ScheduledJobs.c.max_attempts)
                )
            ).mappings().all()
            return [self._row_to_job(row) for row in rows]

    async def query(self, query: JobQuery) -> List[ScheduledJob]:
        stmt = select(ScheduledJobs).where(*self._conditions(query))
        if query.order_by_schedule:
            stmt = stmt.order_by(ScheduledJobs.c.scheduled_at.asc())
        if query.limit is not None:
            stmt = stmt.limit(query.limit)
        async with self.sessionmaker() as session:
            rows = (await session.execute(stmt)).mappings().all()
            return [self._row_to_job(row) for row in rows]

    async def count(self, query: JobQuery) -> int:
        stmt = select(func.count()).select_from(ScheduledJobs).where(*self._conditions(query))
        async with self.sessionmaker() as session:
            return int((await session.execute(stmt)).scalar() or 0)

    async def count_by(self, query: JobQuery, column: str) -> dict[str, int]:
        if column not in {"type", "status"}:
            raise ValueError(f"cannot group jobs by {column!r}")
        col = ScheduledJobs.c[column]
        stmt = (
            select(col, func.count().label("count"))
            .select_from(ScheduledJobs)
            .where(*self._conditions(query))
            .group_by(col)
        )
        async with self.sessionmaker() as session:
            rows = (await session.execute(stmt)).mappings().all()
            return {row[column]: int(row["count"]) for row in rows}

    async def authorization_ids_with_jobs(
        self, job_types: Sequence[JobType], statuses: Sequence[JobStatus]
    ) -> set[int]:
        stmt = (
            select(ScheduledJobs.c.payment_authorization_id)
            .where(ScheduledJobs.c.type.in_([t.value for t in job_types]))
            .where(ScheduledJobs.c.status.in_([s.value for s in statuses]))
            .distinct()
        )
        async with self.sessionmaker() as session:
            rows = (await session.execute(stmt)).mappings().all()
            return {int(row["payment_authorization_id"]) for row in rows}

    async def queue_stats(self) -> dict[str, int]:
        now = self.clock.now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        c = ScheduledJobs.c
        filters = {
            "pending": [c.status == _PENDING],
            "running": [c.status == _RUNNING],
            "completed_today": [
                c.status == JobStatus.COMPLETED.value,
                c.executed_at >= midnight,
            ],
            "failed_today": [c.status == JobStatus.FAILED.value, c.updated_at >= midnight],
            "ready_to_execute": [c.status == _PENDING, c.scheduled_at <= now],
            "retryable": [c.status == JobStatus.FAILED.value, c.attempts < c.max_attempts],
        }
        stats: dict[str, int] = {}
        async with self.sessionmaker() as session:
            for name, conditions in filters.items():
                stmt = select(func.count()).select_from(ScheduledJobs).where(*conditions)
                stats[name] = int((await session.execute(stmt)).scalar() or 0)
        return stats

    async def delete_terminal(self, job_types: Sequence[JobType], older_than: datetime) -> int:
        async with self.sessionmaker() as session:
            res = await session.execute(
                delete(ScheduledJobs)
                .where(ScheduledJobs.c.type.in_([t.value for t in job_types]))
                .where(ScheduledJobs.c.status.in_([s.value for s in TERMINAL_JOB_STATUSES]))
                .where(ScheduledJobs.c.updated_at < older_than)
            )
            await session.commit()
            return int(res.rowcount or 0)

    async def _finish(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        result: dict | None,
        message: str | None = None,
    ) -> bool:
        now = self.clock.now()
        values: dict[str, Any] = dict(
            status=status.value,
            executed_at=now,
            updated_at=now,
            version=ScheduledJobs.c.version + 1,
        )
        if result is not None:
            values["result"] = result
        if message is not None:
            values["error_message"] = message

        async def _op() -> bool:
            async with self.sessionmaker() as session:
                try:
                    res = await session.execute(
                        update(ScheduledJobs)
                        .where(ScheduledJobs.c.id == str(job_id))
                        .where(ScheduledJobs.c.status == _RUNNING)
                        .values(**values)
                    )
                    await session.commit()
                    return bool(res.rowcount)
                except Exception:
                    await session.rollback()
                    raise

        finished = await self._retry_with_backoff(_op)
        if not finished:
            logger.warning(
                "finish skipped, job no longer running: job_id=%s status=%s",
                job_id,
                status.value,
            )
        return finished

    def _cancel_stmt(self, reason: str):
        now = self.clock.now()
        return (
            update(ScheduledJobs)
            .where(ScheduledJobs.c.status == _PENDING)
            .values(
                status=JobStatus.CANCELLED.value,
                error_message=reason,
                executed_at=now,
                updated_at=now,
                lease_until=None,
                leased_by=None,
                active_key=None,
                version=ScheduledJobs.c.version + 1,
            )
        )

    @staticmethod
    def _conditions(query: JobQuery) -> list[Any]:
        c = ScheduledJobs.c
        conditions: list[Any] = []
        if query.types is not None:
            conditions.append(c.type.in_([t.value for t in query.types]))
        if query.statuses is not None:
            conditions.append(c.status.in_([s.value for s in query.statuses]))
        if query.authorization_id is not None:
            conditions.append(c.payment_authorization_id == query.authorization_id)
        if query.scheduled_before is not None:
            conditions.append(c.scheduled_at < query.scheduled_before)
        if query.scheduled_after is not None:
            conditions.append(c.scheduled_at > query.scheduled_after)
        if query.scheduled_not_after is not None:
            conditions.append(c.scheduled_at <= query.scheduled_not_after)
        if query.created_since is not None:
            conditions.append(c.created_at >= query.created_since)
        if query.executed_since is not None:
            conditions.append(c.executed_at >= query.executed_since)
        return conditions

    @staticmethod
    def _row_to_job(row: Any) -> ScheduledJob:
        data = dict(row)
        leased_by = data.get("leased_by")
        return ScheduledJob(
            id=UUID(data["id"]) if isinstance(data["id"], str) else data["id"],
            type=JobType(data["type"]),
            status=JobStatus(data["status"]),
            payment_authorization_id=data["payment_authorization_id"],
            booking_id=data.get("booking_id"),
            scheduled_at=ensure_utc(data["scheduled_at"]),
            priority=data["priority"],
            attempts=data["attempts"],
            max_attempts=data["max_attempts"],
            job_data=dict(data.get("job_data") or {}),
            result=data.get("result"),
            error_message=data.get("error_message"),
            created_at=ensure_utc(data.get("created_at")),
            updated_at=ensure_utc(data.get("updated_at")),
            started_at=ensure_utc(data.get("started_at")),
            executed_at=ensure_utc(data.get("executed_at")),
            lease_until=ensure_utc(data.get("lease_until")),
            leased_by=UUID(leased_by) if isinstance(leased_by, str) else leased_by,
            version=data.get("version") or 0,
            active_key=data.get("active_key"),
        )


class SQLAuthorizationStore(_SQLStore, AuthorizationStore):
    async def put(self, authorization: PaymentAuthorization) -> None:
        """Insert or replace ``authorization``; used by fixtures and tooling."""

        values = self._auth_to_values(authorization)
        async with self.sessionmaker() as session:
            await session.execute(
                delete(PaymentAuthorizations).where(PaymentAuthorizations.c.id == authorization.id)
            )
            await session.execute(insert(PaymentAuthorizations).values(**values))
            await session.commit()

    async def get(self, authorization_id: int) -> PaymentAuthorization | None:
        rows = await self._select(PaymentAuthorizations.c.id == authorization_id)
        return rows[0] if rows else None

    async def existing_ids(self, authorization_ids: Iterable[int]) -> set[int]:
        ids = list(authorization_ids)
        if not ids:
            return set()
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(PaymentAuthorizations.c.id).where(PaymentAuthorizations.c.id.in_(ids))
                )
            ).mappings().all()
            return {int(row["id"]) for row in rows}

    async def list_by_status(
        self, statuses: Sequence[AuthorizationStatus]
    ) -> List[PaymentAuthorization]:
        return await self._select(PaymentAuthorizations.c.status.in_([s.value for s in statuses]))

    async def expired(self, now: datetime) -> List[PaymentAuthorization]:
        return await self._select(
            PaymentAuthorizations.c.status == AuthorizationStatus.PENDING.value,
            PaymentAuthorizations.c.confirmation_deadline < now,
        )

    async def expired_confirmed(self, now: datetime) -> List[PaymentAuthorization]:
        return await self._select(
            PaymentAuthorizations.c.status == AuthorizationStatus.CONFIRMED.value,
            PaymentAuthorizations.c.expires_at < now,
        )

    async def _select(self, *conditions: Any) -> List[PaymentAuthorization]:
        async with self.sessionmaker() as session:
            rows = (
                await session.execute(
                    select(PaymentAuthorizations)
                    .where(*conditions)
                    .order_by(PaymentAuthorizations.c.id.asc())
                )
            ).mappings().all()
            return [self._row_to_authorization(row) for row in rows]

    @staticmethod
    def _auth_to_values(auth: PaymentAuthorization) -> dict[str, Any]:
        return dict(
            id=auth.id,
            booking_id=auth.booking_id,
            payment_intent_id=auth.payment_intent_id,
            amount_cents=auth.amount_cents,
            currency=auth.currency,
            status=auth.status.value,
            confirmation_deadline=auth.confirmation_deadline,
            auto_capture_at=auth.auto_capture_at,
            expires_at=auth.expires_at,
            sender_id=auth.sender.user_id if auth.sender else None,
            sender_email=auth.sender.email if auth.sender else None,
            transporter_id=auth.transporter.user_id if auth.transporter else None,
            transporter_email=auth.transporter.email if auth.transporter else None,
            updated_at=auth.updated_at,
        )

    @staticmethod
    def _row_to_authorization(row: Any) -> PaymentAuthorization:
        data = dict(row)
        sender = (
            Participant(data["sender_id"], data.get("sender_email"))
            if data.get("sender_id") is not None
            else None
        )
        transporter = (
            Participant(data["transporter_id"], data.get("transporter_email"))
            if data.get("transporter_id") is not None
            else None
        )
        return PaymentAuthorization(
            id=data["id"],
            booking_id=data.get("booking_id"),
            payment_intent_id=data.get("payment_intent_id"),
            amount_cents=data["amount_cents"],
            currency=data.get("currency") or "cad",
            status=AuthorizationStatus(data["status"]),
            confirmation_deadline=ensure_utc(data.get("confirmation_deadline")),
            auto_capture_at=ensure_utc(data.get("auto_capture_at")),
            expires_at=ensure_utc(data.get("expires_at")),
            sender=sender,
            transporter=transporter,
            updated_at=ensure_utc(data.get("updated_at")),
        )
