"""Tests for the auto-capture executor."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from payjobs.contracts import AuditEventType, JobQuery
from payjobs.models import (
    AuthorizationStatus,
    CaptureData,
    ErrorKind,
    JobStatus,
    JobType,
    OutcomeStatus,
    ScheduledJob,
)
from payjobs.settings import SchedulerSettings

from conftest import make_authorization


def test_schedule_automatic_capture_is_idempotent(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        first = await harness.capture.schedule_automatic_capture(auth)
        second = await harness.capture.schedule_automatic_capture(auth)
        assert first is not None and second is not None
        assert first.id == second.id
        assert first.scheduled_at == auth.auto_capture_at
        assert first.priority == 1
        assert first.data == CaptureData(payment_intent_id="pi_1")

    asyncio.run(_run())


def test_schedule_automatic_capture_skips_missing_or_past_deadline(harness) -> None:
    async def _run() -> None:
        no_deadline = make_authorization(1, now=harness.now, auto_capture_at=None)
        past = make_authorization(2, now=harness.now, auto_capture_at=harness.now - timedelta(minutes=1))
        assert await harness.capture.schedule_automatic_capture(no_deadline) is None
        assert await harness.capture.schedule_automatic_capture(past) is None
        assert await harness.jobs.count(JobQuery()) == 0

    asyncio.run(_run())


def test_execute_captures_and_records_audit(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        harness.clock.advance(hours=72)

        outcome = await harness.capture.execute(job)
        assert outcome.status is OutcomeStatus.SUCCEEDED
        assert outcome.result == {
            "captured_amount": 2500,
            "capture_reason": "auto_72h",
            "authorization_id": 1,
        }
        stored = await harness.jobs.get(job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.executed_at == harness.now
        assert stored.attempts == 1
        assert harness.gateway.captured == [(1, "auto_72h")]

        events = await harness.audit.events(authorization_id=1)
        assert [e.event_type for e in events] == [AuditEventType.CAPTURE_SUCCEEDED]
        assert events[0].success and events[0].recorded_at == harness.now

    asyncio.run(_run())


def test_execute_on_non_pending_job_is_a_noop(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        await harness.jobs.cancel(job.id, "cancelled")
        cancelled = await harness.jobs.get(job.id)

        outcome = await harness.capture.execute(cancelled)
        assert not outcome
        assert outcome.status is OutcomeStatus.NOT_CLAIMED
        after = await harness.jobs.get(job.id)
        assert after == cancelled
        assert harness.gateway.captured == []

    asyncio.run(_run())


def test_execute_loses_claim_race_without_side_effects(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        harness.clock.advance(hours=72)
        stale_copy = await harness.jobs.get(job.id)

        outcomes = await asyncio.gather(
            harness.capture.execute(stale_copy), harness.capture.execute(stale_copy)
        )
        statuses = sorted(o.status.value for o in outcomes)
        assert statuses == ["not_claimed", "succeeded"]
        assert len(harness.gateway.captured) == 1

    asyncio.run(_run())


def test_uncapturable_authorization_completes_as_skipped(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        auth.status = AuthorizationStatus.CANCELLED
        harness.clock.advance(hours=72)

        outcome = await harness.capture.execute(job)
        assert outcome.status is OutcomeStatus.SKIPPED
        stored = await harness.jobs.get(job.id)
        assert stored.status is JobStatus.COMPLETED
        assert stored.skipped
        assert stored.result["current_status"] == "cancelled"
        assert harness.gateway.captured == []

    asyncio.run(_run())


def test_missing_authorization_fails_with_not_found(harness) -> None:
    async def _run() -> None:
        auth = make_authorization(now=harness.now)
        job = await harness.capture.schedule_automatic_capture(auth)

        outcome = await harness.capture.execute(job)
        assert outcome.error_kind is ErrorKind.NOT_FOUND
        stored = await harness.jobs.get(job.id)
        assert stored.status is JobStatus.FAILED
        assert stored.error_message == "authorization not found"
        assert stored.result["error_kind"] == "not_found"

    asyncio.run(_run())


def test_gateway_refusal_and_exception_fail_with_audit(harness) -> None:
    async def _run() -> None:
        refused = await harness.add(make_authorization(1, now=harness.now))
        raising = await harness.add(make_authorization(2, now=harness.now))
        refused_job = await harness.capture.schedule_automatic_capture(refused)
        raising_job = await harness.capture.schedule_automatic_capture(raising)

        harness.gateway.capture_result = False
        outcome = await harness.capture.execute(refused_job)
        assert outcome.error_kind is ErrorKind.GATEWAY_FAILURE
        assert outcome.message == "payment capture failed"

        harness.gateway.capture_result = RuntimeError("card declined")
        outcome = await harness.capture.execute(raising_job)
        assert outcome.error_kind is ErrorKind.GATEWAY_FAILURE
        assert (await harness.jobs.get(raising_job.id)).error_message == "card declined"

        failures = await harness.audit.events(event_type=AuditEventType.CAPTURE_FAILED)
        assert sorted(e.payment_authorization_id for e in failures) == [1, 2]
        assert all(not e.success for e in failures)

    asyncio.run(_run())


def test_gateway_timeout_is_reported_as_timeout(make_harness) -> None:
    async def _run() -> None:
        harness = make_harness(SchedulerSettings(gateway_timeout_s=0.01))
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        harness.gateway.delay = 1.0

        outcome = await harness.capture.execute(job)
        assert outcome.error_kind is ErrorKind.TIMEOUT
        assert (await harness.jobs.get(job.id)).result["error_kind"] == "timeout"

    asyncio.run(_run())


def test_plan_capture_rejects_authorization_without_deadline(harness) -> None:
    async def _run() -> None:
        no_deadline = make_authorization(1, now=harness.now, auto_capture_at=None)
        with pytest.raises(ValueError, match="has no auto_capture_at"):
            await harness.capture.plan_capture(no_deadline)
        assert await harness.jobs.count(JobQuery()) == 0

    asyncio.run(_run())


def test_store_error_during_run_is_an_internal_error(harness, monkeypatch) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)

        async def unreachable(authorization_id: int):
            raise ConnectionError("authorization store unreachable")

        monkeypatch.setattr(harness.authorizations, "get", unreachable)
        outcome = await harness.capture.execute(job)
        assert outcome.error_kind is ErrorKind.INTERNAL_ERROR
        assert outcome.message == "authorization store unreachable"
        stored = await harness.jobs.get(job.id)
        assert stored.status is JobStatus.FAILED
        assert stored.result["error_kind"] == "internal_error"
        assert harness.gateway.captured == []

    asyncio.run(_run())


def test_audit_failures_do_not_fail_the_job(harness) -> None:
    async def _run() -> None:
        async def broken_record(event) -> None:
            raise RuntimeError("audit store down")

        harness.audit.record = broken_record  # type: ignore[method-assign]
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        outcome = await harness.capture.execute(job)
        assert outcome.status is OutcomeStatus.SUCCEEDED

    asyncio.run(_run())


def test_batch_classifies_outcomes_and_respects_cap(make_harness) -> None:
    async def _run() -> None:
        harness = make_harness(SchedulerSettings(capture_batch_size=3))
        for auth_id in (1, 2, 3, 4):
            auth = await harness.add(make_authorization(auth_id, now=harness.now))
            await harness.capture.schedule_automatic_capture(auth)
        (await harness.authorizations.get(2)).status = AuthorizationStatus.CAPTURED
        harness.clock.advance(hours=72)

        results = await harness.capture.process_all_pending_captures()
        assert results["processed"] == 3
        assert results["successful"] + results["skipped"] + results["failed"] == 3
        assert results["skipped"] == 1
        remaining = await harness.capture.process_all_pending_captures()
        assert remaining["processed"] == 1

    asyncio.run(_run())


def test_batch_quarantines_unexpected_errors(harness, monkeypatch) -> None:
    async def _run() -> None:
        for auth_id in (1, 2):
            auth = await harness.add(make_authorization(auth_id, now=harness.now))
            await harness.capture.schedule_automatic_capture(auth)
        harness.clock.advance(hours=72)

        original = harness.capture.execute

        async def flaky(job: ScheduledJob):
            if job.payment_authorization_id == 1:
                raise RuntimeError("store hiccup")
            return await original(job)

        monkeypatch.setattr(harness.capture, "execute", flaky)
        results = await harness.capture.process_all_pending_captures()
        assert results == {"processed": 2, "successful": 1, "failed": 1, "skipped": 0}

    asyncio.run(_run())


def test_reschedule_capture_requires_retryable_job(harness) -> None:
    async def _run() -> None:
        auth = await harness.add(make_authorization(now=harness.now))
        job = await harness.capture.schedule_automatic_capture(auth)
        assert not await harness.capture.reschedule_capture(job)

        harness.gateway.capture_result = False
        await harness.capture.execute(job)
        failed = await harness.jobs.get(job.id)
        assert await harness.capture.reschedule_capture(failed, delay_minutes=15)
        pending = await harness.jobs.get(job.id)
        assert pending.status is JobStatus.PENDING
        assert pending.scheduled_at == harness.now + timedelta(minutes=15)

        failed.attempts = failed.max_attempts
        assert not await harness.capture.reschedule_capture(failed)

    asyncio.run(_run())


def test_validate_scheduled_jobs_repairs_queue(harness) -> None:
    async def _run() -> None:
        # orphan: authorization vanished
        orphan_auth = make_authorization(1, now=harness.now)
        orphan = await harness.capture.schedule_automatic_capture(orphan_auth)
        # overdue but still capturable
        overdue_auth = await harness.add(make_authorization(2, now=harness.now))
        overdue = await harness.capture.schedule_automatic_capture(overdue_auth)
        # overdue and no longer capturable
        dead_auth = await harness.add(make_authorization(3, now=harness.now))
        dead = await harness.capture.schedule_automatic_capture(dead_auth)
        # confirmed later, without a job
        harness.clock.advance(hours=74)
        dead_auth.status = AuthorizationStatus.CAPTURED
        missing = await harness.add(make_authorization(4, now=harness.now))

        report = await harness.capture.validate_scheduled_jobs()
        assert report["issues_found"] == 4

        assert (await harness.jobs.get(orphan.id)).status is JobStatus.CANCELLED
        moved = await harness.jobs.get(overdue.id)
        assert moved.status is JobStatus.PENDING and moved.scheduled_at == harness.now
        assert (await harness.jobs.get(dead.id)).status is JobStatus.CANCELLED
        created = await harness.jobs.find_pending(missing.id, JobType.AUTO_CAPTURE)
        assert created is not None and created.scheduled_at == missing.auto_capture_at

        again = await harness.capture.validate_scheduled_jobs()
        assert again["issues_found"] == 0

    asyncio.run(_run())


def test_capture_statistics(harness) -> None:
    async def _run() -> None:
        ok = await harness.add(make_authorization(1, now=harness.now))
        bad = await harness.add(make_authorization(2, now=harness.now))
        later = await harness.add(
            make_authorization(3, now=harness.now, auto_capture_at=harness.now + timedelta(days=5))
        )
        jobs = [await harness.capture.schedule_automatic_capture(a) for a in (ok, bad, later)]
        harness.clock.advance(hours=72)
        await harness.capture.execute(jobs[0])
        harness.gateway.capture_result = False
        await harness.capture.execute(jobs[1])

        stats = await harness.capture.get_capture_statistics()
        assert stats["total_jobs"] == 3
        assert stats["by_status"] == {"completed": 1, "failed": 1, "pending": 1}
        assert stats["success_rate"] == 50.0
        assert stats["average_execution_time"] == 0.0
        assert stats["upcoming_captures"] == 1

    asyncio.run(_run())
