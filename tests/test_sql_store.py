"""Tests for the SQL stores using a synchronous SQLite engine wrapper."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from types import SimpleNamespace
from uuid import uuid4

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payjobs.backends.sql.backend import SQLAuthorizationStore, SQLJobStore
from payjobs.backends.sql.schema import metadata
from payjobs.clock import FixedClock
from payjobs.contracts import JobQuery
from payjobs.executors import CaptureExecutor
from payjobs.models import (
    AuthorizationStatus,
    CaptureData,
    ExpiryData,
    ExpiryType,
    JobStatus,
    JobType,
    ScheduledJob,
)

from conftest import NOW, FakeGateway, make_authorization


class _AsyncSessionWrapper:
    def __init__(self, sync_session):
        self._session = sync_session

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._session.close()

    async def execute(self, statement, params=None):
        return self._session.execute(statement, params or {})

    async def commit(self) -> None:
        self._session.commit()

    async def rollback(self) -> None:
        self._session.rollback()


def _make_stores(clock: FixedClock) -> tuple[SQLJobStore, SQLAuthorizationStore]:
    sync_engine = create_engine("sqlite:///:memory:", future=True)
    metadata.create_all(sync_engine)
    SyncSession = sessionmaker(sync_engine, future=True)

    jobs = object.__new__(SQLJobStore)
    jobs.engine = SimpleNamespace(dialect=sync_engine.dialect)
    jobs.clock = clock
    jobs.prefer_pg_skip_locked = False
    jobs._warned_about_skip_locked = False
    jobs.sessionmaker = lambda: _AsyncSessionWrapper(SyncSession())

    authorizations = object.__new__(SQLAuthorizationStore)
    authorizations.engine = jobs.engine
    authorizations.clock = clock
    authorizations.sessionmaker = jobs.sessionmaker
    return jobs, authorizations


def _capture_job(auth_id: int = 1, **kwargs) -> ScheduledJob:
    return ScheduledJob.for_authorization(
        make_authorization(auth_id),
        JobType.AUTO_CAPTURE,
        scheduled_at=kwargs.pop("scheduled_at", NOW),
        data=CaptureData(payment_intent_id=f"pi_{auth_id}"),
        priority=kwargs.pop("priority", 1),
    )


def test_sql_store_create_is_insert_or_return_existing() -> None:
    async def _run() -> None:
        jobs, _ = _make_stores(FixedClock(NOW))
        first, created = await jobs.create(_capture_job())
        second, created_again = await jobs.create(_capture_job())
        assert created and not created_again
        assert second.id == first.id
        assert first.scheduled_at == NOW
        assert first.job_data["payment_intent_id"] == "pi_1"
        assert await jobs.count(JobQuery(types=[JobType.AUTO_CAPTURE])) == 1

        expiry = ScheduledJob.for_authorization(
            make_authorization(1),
            JobType.PAYMENT_EXPIRY,
            scheduled_at=NOW,
            data=ExpiryData(ExpiryType.CAPTURE),
            priority=3,
        )
        _, created_expiry = await jobs.create(expiry)
        assert created_expiry
        found = await jobs.find_pending(1, JobType.PAYMENT_EXPIRY, "capture")
        assert found is not None and found.id == expiry.id
        assert await jobs.find_pending(1, JobType.PAYMENT_EXPIRY, "confirmation") is None

    asyncio.run(_run())


def test_sql_store_lifecycle_transitions() -> None:
    async def _run() -> None:
        clock = FixedClock(NOW)
        jobs, _ = _make_stores(clock)
        job, _ = await jobs.create(_capture_job())

        claimed = await jobs.claim(job.id)
        assert claimed is not None
        assert claimed.status is JobStatus.RUNNING and claimed.attempts == 1
        assert claimed.active_key is None
        assert await jobs.claim(job.id) is None

        assert await jobs.fail(job.id, "gateway down", {"error_kind": "gateway_failure"})
        failed = await jobs.get(job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.error_message == "gateway down"
        assert failed.executed_at == NOW
        assert [j.id for j in await jobs.failed_retryable()] == [job.id]

        retry_at = NOW + timedelta(minutes=10)
        assert await jobs.reschedule(job.id, retry_at, from_status=JobStatus.FAILED)
        pending = await jobs.get(job.id)
        assert pending.status is JobStatus.PENDING and pending.scheduled_at == retry_at
        assert pending.executed_at is None
        assert pending.active_key == "1:auto_capture:-"

        assert await jobs.cancel(job.id, "authorization processed")
        cancelled = await jobs.get(job.id)
        assert cancelled.status is JobStatus.CANCELLED
        assert not await jobs.cancel(job.id, "again")
        assert await jobs.get(uuid4()) is None

    asyncio.run(_run())


def test_sql_store_reschedule_blocked_by_pending_duplicate() -> None:
    async def _run() -> None:
        jobs, _ = _make_stores(FixedClock(NOW))
        job, _ = await jobs.create(_capture_job())
        await jobs.claim(job.id)
        await jobs.fail(job.id, "boom")
        await jobs.create(_capture_job())
        assert not await jobs.reschedule(job.id, NOW, from_status=JobStatus.FAILED)
        assert (await jobs.get(job.id)).status is JobStatus.FAILED

    asyncio.run(_run())


def test_sql_store_claim_ready_generic_leases_in_priority_order() -> None:
    async def _run() -> None:
        clock = FixedClock(NOW)
        jobs, _ = _make_stores(clock)
        low, _ = await jobs.create(_capture_job(1, priority=5))
        high, _ = await jobs.create(_capture_job(2, priority=1))
        await jobs.create(_capture_job(3, scheduled_at=NOW + timedelta(hours=1)))

        batch = await jobs.claim_ready([JobType.AUTO_CAPTURE], limit=5, owner=uuid4(), lease_ttl_s=60)
        assert [job.id for job in batch] == [high.id, low.id]
        assert await jobs.claim_ready(
            [JobType.AUTO_CAPTURE], limit=5, owner=uuid4(), lease_ttl_s=60
        ) == []
        assert await jobs.claim_ready(
            [JobType.PAYMENT_EXPIRY], limit=5, owner=uuid4(), lease_ttl_s=60
        ) == []

    asyncio.run(_run())


def test_sql_store_claim_ready_prefers_pg(monkeypatch) -> None:
    async def _run() -> None:
        jobs, _ = _make_stores(FixedClock(NOW))
        jobs.engine.dialect = SimpleNamespace(name="postgresql")
        jobs.prefer_pg_skip_locked = True
        calls: list[int] = []

        async def fake_pg(job_types, limit, owner, lease_ttl_s):
            calls.append(limit)
            return []

        monkeypatch.setattr(jobs, "_claim_ready_pg", fake_pg)
        assert await jobs.claim_ready([JobType.AUTO_CAPTURE], limit=7, owner=uuid4(), lease_ttl_s=1) == []
        assert calls == [7]

    asyncio.run(_run())


def test_sql_store_bulk_operations_and_stats() -> None:
    async def _run() -> None:
        clock = FixedClock(NOW)
        jobs, _ = _make_stores(clock)
        a, _ = await jobs.create(_capture_job(1))
        b, _ = await jobs.create(_capture_job(2, scheduled_at=NOW + timedelta(hours=2)))
        c, _ = await jobs.create(_capture_job(3))
        await jobs.claim(c.id)
        await jobs.complete(c.id, {"captured_amount": 2500})

        stats = await jobs.queue_stats()
        assert stats["pending"] == 2
        assert stats["ready_to_execute"] == 1
        assert stats["completed_today"] == 1
        assert await jobs.count_by(JobQuery(), "status") == {"pending": 2, "completed": 1}
        upcoming = await jobs.query(
            JobQuery(statuses=[JobStatus.PENDING], scheduled_after=NOW, order_by_schedule=True, limit=5)
        )
        assert [job.id for job in upcoming] == [b.id]

        assert await jobs.cancel_pending_for_authorization(1, "done") == 1
        assert await jobs.cancel_pending_for_authorization(3, "done") == 0
        assert (await jobs.get(c.id)).status is JobStatus.COMPLETED
        assert await jobs.authorization_ids_with_jobs(
            [JobType.AUTO_CAPTURE], [JobStatus.PENDING]
        ) == {2}

        clock.advance(days=31)
        deleted = await jobs.delete_terminal([JobType.AUTO_CAPTURE], clock.now() - timedelta(days=30))
        assert deleted == 2
        assert await jobs.get(a.id) is None

    asyncio.run(_run())


def test_sql_store_fail_stuck_only_touches_old_running_jobs() -> None:
    async def _run() -> None:
        clock = FixedClock(NOW)
        jobs, _ = _make_stores(clock)
        old, _ = await jobs.create(_capture_job(1))
        await jobs.claim(old.id)
        clock.advance(minutes=40)
        fresh, _ = await jobs.create(_capture_job(2))
        await jobs.claim(fresh.id)

        failed = await jobs.fail_stuck(clock.now() - timedelta(minutes=30), "Job stuck in running state")
        assert failed == [old.id]
        assert (await jobs.get(fresh.id)).status is JobStatus.RUNNING

    asyncio.run(_run())


def test_sql_authorization_store_round_trip_and_predicates() -> None:
    async def _run() -> None:
        _, authorizations = _make_stores(FixedClock(NOW))
        await authorizations.put(
            make_authorization(1, AuthorizationStatus.PENDING, confirmation_deadline=NOW - timedelta(minutes=5))
        )
        await authorizations.put(make_authorization(2, expires_at=NOW - timedelta(minutes=5)))
        await authorizations.put(make_authorization(3))

        loaded = await authorizations.get(3)
        assert loaded.status is AuthorizationStatus.CONFIRMED
        assert loaded.auto_capture_at == NOW + timedelta(hours=72)
        assert loaded.sender.email == "sender@example.com"
        assert loaded.transporter.user_id == 20

        assert [a.id for a in await authorizations.expired(NOW)] == [1]
        assert [a.id for a in await authorizations.expired_confirmed(NOW)] == [2]
        assert [a.id for a in await authorizations.confirmed()] == [2, 3]
        assert await authorizations.existing_ids([1, 4]) == {1}
        assert await authorizations.existing_ids([]) == set()

        loaded.status = AuthorizationStatus.CAPTURED
        await authorizations.put(loaded)
        assert (await authorizations.get(3)).is_captured()

    asyncio.run(_run())


def test_executor_runs_against_sql_stores() -> None:
    async def _run() -> None:
        clock = FixedClock(NOW)
        jobs, authorizations = _make_stores(clock)
        auth = make_authorization(1)
        await authorizations.put(auth)
        gateway = FakeGateway()
        executor = CaptureExecutor(
            gateway=gateway, jobs=jobs, authorizations=authorizations, clock=clock
        )

        job = await executor.schedule_automatic_capture(auth)
        assert (await executor.schedule_automatic_capture(auth)).id == job.id

        clock.advance(hours=72)
        results = await executor.process_all_pending_captures()
        assert results == {"processed": 1, "successful": 1, "failed": 0, "skipped": 0}
        done = await jobs.get(job.id)
        assert done.status is JobStatus.COMPLETED
        assert done.result["captured_amount"] == 2500
        assert gateway.captured == [(1, "auto_72h")]

    asyncio.run(_run())
