"""In-memory store implementations."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Sequence
from uuid import UUID

from ..clock import Clock, SystemClock
from ..contracts import AuthorizationStore, JobQuery, JobStore
from ..models import (
    TERMINAL_JOB_STATUSES,
    AuthorizationStatus,
    JobStatus,
    JobType,
    PaymentAuthorization,
    ScheduledJob,
    dedup_key,
)


def _copy(job: ScheduledJob) -> ScheduledJob:
    return replace(
        job,
        job_data=dict(job.job_data),
        result=dict(job.result) if job.result is not None else None,
    )


def _matches(job: ScheduledJob, query: JobQuery) -> bool:
    if query.types is not None and job.type not in query.types:
        return False
    if query.statuses is not None and job.status not in query.statuses:
        return False
    if query.authorization_id is not None and job.payment_authorization_id != query.authorization_id:
        return False
    if query.scheduled_before is not None and not job.scheduled_at < query.scheduled_before:
        return False
    if query.scheduled_after is not None and not job.scheduled_at > query.scheduled_after:
        return False
    if query.scheduled_not_after is not None and not job.scheduled_at <= query.scheduled_not_after:
        return False
    if query.created_since is not None and (
        job.created_at is None or job.created_at < query.created_since
    ):
        return False
    if query.executed_since is not None and (
        job.executed_at is None or job.executed_at < query.executed_since
    ):
        return False
    return True


class MemoryJobStore(JobStore):
    def __init__(self, *, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._jobs: Dict[UUID, ScheduledJob] = {}
        self._active: Dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: ScheduledJob) -> tuple[ScheduledJob, bool]:
        async with self._lock:
            key = job.dedup_key
            existing_id = self._active.get(key)
            if existing_id is not None:
                return _copy(self._jobs[existing_id]), False
            now = self.clock.now()
            stored = _copy(job)
            stored.status = JobStatus.PENDING
            stored.created_at = stored.created_at or now
            stored.updated_at = now
            stored.active_key = key
            self._jobs[stored.id] = stored
            self._active[key] = stored.id
            return _copy(stored), True

    async def get(self, job_id: UUID) -> ScheduledJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return _copy(job) if job else None

    async def find_pending(
        self, authorization_id: int, job_type: JobType, subtype: str | None = None
    ) -> ScheduledJob | None:
        async with self._lock:
            job_id = self._active.get(dedup_key(authorization_id, job_type, subtype))
            return _copy(self._jobs[job_id]) if job_id else None

    async def claim_ready(
        self, job_types: Sequence[JobType], *, limit: int, owner: UUID, lease_ttl_s: int
    ) -> List[ScheduledJob]:
        async with self._lock:
            now = self.clock.now()
            candidates = sorted(
                (
                    job
                    for job in self._jobs.values()
                    if job.type in job_types
                    and job.status is JobStatus.PENDING
                    and job.scheduled_at <= now
                    and (job.lease_until is None or job.lease_until <= now)
                ),
                key=lambda j: (j.priority, j.scheduled_at),
            )
            leased: List[ScheduledJob] = []
            for job in candidates[:limit]:
                job.lease_until = now + timedelta(seconds=lease_ttl_s)
                job.leased_by = owner
                job.version += 1
                leased.append(_copy(job))
            return leased

    async def claim(self, job_id: UUID) -> ScheduledJob | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                return None
            now = self.clock.now()
            self._release_key(job)
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.started_at = now
            job.updated_at = now
            job.lease_until = None
            job.leased_by = None
            job.version += 1
            return _copy(job)

    async def complete(self, job_id: UUID, result: dict) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED, result=result)

    async def fail(self, job_id: UUID, message: str, result: dict | None = None) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, result=result, message=message)

    async def reschedule(
        self, job_id: UUID, scheduled_at: datetime, *, from_status: JobStatus
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not from_status:
                return False
            key = job.dedup_key
            holder = self._active.get(key)
            if holder is not None and holder != job.id:
                return False
            job.status = JobStatus.PENDING
            job.scheduled_at = scheduled_at
            job.updated_at = self.clock.now()
            job.executed_at = None
            job.lease_until = None
            job.leased_by = None
            job.active_key = key
            job.version += 1
            self._active[key] = job.id
            return True

    async def cancel(self, job_id: UUID, reason: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                return False
            self._cancel(job, reason, self.clock.now())
            return True

    async def cancel_pending_for_authorization(self, authorization_id: int, reason: str) -> int:
        async with self._lock:
            now = self.clock.now()
            pending = [
                job
                for job in self._jobs.values()
                if job.payment_authorization_id == authorization_id
                and job.status is JobStatus.PENDING
            ]
            for job in pending:
                self._cancel(job, reason, now)
            return len(pending)

    async def fail_stuck(self, running_since: datetime, message: str) -> List[UUID]:
        async with self._lock:
            now = self.clock.now()
            stuck = [
                job
                for job in self._jobs.values()
                if job.status is JobStatus.RUNNING
                and job.updated_at is not None
                and job.updated_at < running_since
            ]
            for job in stuck:
                job.status = JobStatus.FAILED
                job.error_message = message
                job.executed_at = now
                job.updated_at = now
                job.version += 1
            return [job.id for job in stuck]

    async def failed_retryable(self) -> List[ScheduledJob]:
        async with self._lock:
            return [
                _copy(job)
                for job in self._jobs.values()
                if job.status is JobStatus.FAILED and job.attempts < job.max_attempts
            ]

    async def query(self, query: JobQuery) -> List[ScheduledJob]:
        async with self._lock:
            rows = [job for job in self._jobs.values() if _matches(job, query)]
            if query.order_by_schedule:
                rows.sort(key=lambda j: j.scheduled_at)
            if query.limit is not None:
                rows = rows[: query.limit]
            return [_copy(job) for job in rows]

    async def count(self, query: JobQuery) -> int:
        async with self._lock:
            return sum(1 for job in self._jobs.values() if _matches(job, query))

    async def count_by(self, query: JobQuery, column: str) -> dict[str, int]:
        if column not in {"type", "status"}:
            raise ValueError(f"cannot group jobs by {column!r}")
        counts: dict[str, int] = {}
        async with self._lock:
            for job in self._jobs.values():
                if _matches(job, query):
                    value = getattr(job, column).value
                    counts[value] = counts.get(value, 0) + 1
        return counts

    async def authorization_ids_with_jobs(
        self, job_types: Sequence[JobType], statuses: Sequence[JobStatus]
    ) -> set[int]:
        async with self._lock:
            return {
                job.payment_authorization_id
                for job in self._jobs.values()
                if job.type in job_types and job.status in statuses
            }

    async def queue_stats(self) -> dict[str, int]:
        async with self._lock:
            now = self.clock.now()
            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            jobs = list(self._jobs.values())
            return {
                "pending": sum(1 for j in jobs if j.status is JobStatus.PENDING),
                "running": sum(1 for j in jobs if j.status is JobStatus.RUNNING),
                "completed_today": sum(
                    1
                    for j in jobs
                    if j.status is JobStatus.COMPLETED
                    and j.executed_at is not None
                    and j.executed_at >= midnight
                ),
                "failed_today": sum(
                    1
                    for j in jobs
                    if j.status is JobStatus.FAILED
                    and j.updated_at is not None
                    and j.updated_at >= midnight
                ),
                "ready_to_execute": sum(1 for j in jobs if j.is_ready_to_execute(now)),
                "retryable": sum(1 for j in jobs if j.can_retry()),
            }

    async def delete_terminal(self, job_types: Sequence[JobType], older_than: datetime) -> int:
        async with self._lock:
            doomed = [
                job.id
                for job in self._jobs.values()
                if job.type in job_types
                and job.status in TERMINAL_JOB_STATUSES
                and job.updated_at is not None
                and job.updated_at < older_than
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def check_connection(self) -> None:
        return None

    async def _finish(
        self,
        job_id: UUID,
        status: JobStatus,
        *,
        result: dict | None,
        message: str | None = None,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return False
            now = self.clock.now()
            job.status = status
            job.executed_at = now
            job.updated_at = now
            if result is not None:
                job.result = dict(result)
            if message is not None:
                job.error_message = message
            job.version += 1
            return True

    def _cancel(self, job: ScheduledJob, reason: str, now: datetime) -> None:
        self._release_key(job)
        job.status = JobStatus.CANCELLED
        job.error_message = reason
        job.executed_at = now
        job.updated_at = now
        job.lease_until = None
        job.leased_by = None
        job.version += 1

    def _release_key(self, job: ScheduledJob) -> None:
        if job.active_key is not None and self._active.get(job.active_key) == job.id:
            del self._active[job.active_key]
        job.active_key = None


class MemoryAuthorizationStore(AuthorizationStore):
    """Dictionary-backed authorization store; ``put`` stands in for the payments service."""

    def __init__(self, authorizations: Iterable[PaymentAuthorization] = ()) -> None:
        self._items: Dict[int, PaymentAuthorization] = {a.id: a for a in authorizations}
        self._lock = asyncio.Lock()

    async def put(self, authorization: PaymentAuthorization) -> None:
        async with self._lock:
            self._items[authorization.id] = authorization

    async def remove(self, authorization_id: int) -> None:
        async with self._lock:
            self._items.pop(authorization_id, None)

    async def get(self, authorization_id: int) -> PaymentAuthorization | None:
        async with self._lock:
            return self._items.get(authorization_id)

    async def existing_ids(self, authorization_ids: Iterable[int]) -> set[int]:
        async with self._lock:
            return {auth_id for auth_id in authorization_ids if auth_id in self._items}

    async def list_by_status(
        self, statuses: Sequence[AuthorizationStatus]
    ) -> List[PaymentAuthorization]:
        async with self._lock:
            return [a for a in self._items.values() if a.status in statuses]

    async def expired(self, now: datetime) -> List[PaymentAuthorization]:
        async with self._lock:
            return [a for a in self._items.values() if a.is_confirmation_expired(now)]

    async def expired_confirmed(self, now: datetime) -> List[PaymentAuthorization]:
        async with self._lock:
            return [a for a in self._items.values() if a.is_capture_expired(now)]
