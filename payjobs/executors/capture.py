"""Automatic capture of confirmed payment authorizations."""

from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from .base import AUTHORIZATION_NOT_FOUND, JobExecutor
from ..contracts import AuditEvent, AuditEventType, JobQuery, PaymentGateway
from ..models import (
    PRIORITY_CAPTURE,
    CaptureData,
    ErrorKind,
    JobOutcome,
    JobStatus,
    JobType,
    PaymentAuthorization,
    ScheduledJob,
)

logger = logging.getLogger(__name__)


class CaptureExecutor(JobExecutor):
    job_types = (JobType.AUTO_CAPTURE,)
    batch_name = "capture"
    failure_kind = ErrorKind.GATEWAY_FAILURE

    def __init__(self, *, gateway: PaymentGateway, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.gateway = gateway

    async def _run(self, job: ScheduledJob) -> JobOutcome:
        authorization = await self.authorizations.get(job.payment_authorization_id)
        if authorization is None:
            return JobOutcome.failed(job.id, ErrorKind.NOT_FOUND, AUTHORIZATION_NOT_FOUND)

        now = self.clock.now()
        if not authorization.can_be_captured(now):
            return JobOutcome.skipped(
                job.id,
                {
                    "reason": "authorization cannot be captured anymore",
                    "current_status": authorization.status.value,
                },
            )

        data = job.data
        captured = await self._call(
            "capture",
            self.gateway.capture(authorization, data.capture_reason),
            self.settings.gateway_timeout_s,
        )
        if not captured:
            outcome = JobOutcome.failed(job.id, ErrorKind.GATEWAY_FAILURE, "payment capture failed")
            await self._audit(self._failure_event(job, outcome))
            return outcome

        await self._audit(
            AuditEvent(
                event_type=AuditEventType.CAPTURE_SUCCEEDED,
                payment_authorization_id=authorization.id,
                booking_id=authorization.booking_id,
                success=True,
                event_data={
                    "job_id": str(job.id),
                    "capture_reason": data.capture_reason,
                    "execution_type": "automatic",
                },
            )
        )
        return JobOutcome.succeeded(
            job.id,
            {
                "captured_amount": authorization.amount_cents,
                "capture_reason": data.capture_reason,
                "authorization_id": authorization.id,
            },
        )

    def _failure_event(self, job: ScheduledJob, outcome: JobOutcome) -> AuditEvent | None:
        return AuditEvent(
            event_type=AuditEventType.CAPTURE_FAILED,
            payment_authorization_id=job.payment_authorization_id,
            booking_id=job.booking_id,
            success=False,
            error_message=outcome.message,
            error_kind=outcome.error_kind,
            event_data={"job_id": str(job.id), "execution_type": "automatic"},
        )

    async def process_all_pending_captures(self) -> dict[str, int]:
        return await self._process_batch(self.settings.capture_batch_size)

    async def schedule_automatic_capture(
        self, authorization: PaymentAuthorization
    ) -> ScheduledJob | None:
        """Plan the auto-capture job; returns the existing pending job if any."""

        if authorization.auto_capture_at is None or authorization.auto_capture_at < self.clock.now():
            return None
        job, _ = await self.plan_capture(authorization)
        return job

    async def plan_capture(self, authorization: PaymentAuthorization) -> tuple[ScheduledJob, bool]:
        """Create the auto-capture job, or return the pending one with ``False``.

        Raises ``ValueError`` when the authorization has no ``auto_capture_at``.
        """

        if authorization.auto_capture_at is None:
            raise ValueError(f"authorization {authorization.id} has no auto_capture_at")
        return await self._schedule(
            authorization,
            JobType.AUTO_CAPTURE,
            scheduled_at=authorization.auto_capture_at,
            data=CaptureData(payment_intent_id=authorization.payment_intent_id),
            priority=PRIORITY_CAPTURE,
        )

    async def reschedule_capture(self, job: ScheduledJob, delay_minutes: int = 30) -> bool:
        """Put a retryable failed capture back in the queue after ``delay_minutes``."""

        if not job.can_retry():
            return False
        return await self.jobs.reschedule(
            job.id,
            self.clock.now() + timedelta(minutes=delay_minutes),
            from_status=JobStatus.FAILED,
        )

    async def validate_scheduled_jobs(self) -> dict[str, Any]:
        """Repair orphaned, overdue and missing auto-capture jobs."""

        issues: list[str] = []
        now = self.clock.now()

        await self._cancel_orphans(issues)

        overdue = await self.jobs.query(
            JobQuery(
                types=self.job_types,
                statuses=[JobStatus.PENDING],
                scheduled_before=now - self.settings.capture_overdue_after,
            )
        )
        for job in overdue:
            authorization = await self.authorizations.get(job.payment_authorization_id)
            if authorization is not None and authorization.can_be_captured(now):
                if await self.jobs.reschedule(job.id, now, from_status=JobStatus.PENDING):
                    issues.append(f"overdue capture job rescheduled: {job.id}")
            elif await self.jobs.cancel(job.id, "authorization no longer capturable"):
                issues.append(f"overdue capture job cancelled: {job.id}")

        with_jobs = await self.jobs.authorization_ids_with_jobs(
            self.job_types, [JobStatus.PENDING]
        )
        for authorization in await self.authorizations.confirmed():
            if authorization.id in with_jobs:
                continue
            if authorization.auto_capture_at is None or authorization.auto_capture_at <= now:
                continue
            job, created = await self.plan_capture(authorization)
            if created:
                issues.append(f"capture job created for authorization: {authorization.id}")

        return {"issues_found": len(issues), "issues": issues}

    async def get_capture_statistics(self, days: int | None = None) -> dict[str, Any]:
        days = days if days is not None else self.settings.statistics_days
        since = self._since(days)
        now = self.clock.now()
        window = JobQuery(types=self.job_types, created_since=since)
        by_status = await self.jobs.count_by(window, "status")
        return {
            "total_jobs": sum(by_status.values()),
            "by_status": by_status,
            "success_rate": self._success_rate(by_status),
            "average_execution_time": await self._average_execution_time(since),
            "upcoming_captures": await self.jobs.count(
                JobQuery(types=self.job_types, statuses=[JobStatus.PENDING], scheduled_after=now)
            ),
        }

    async def _average_execution_time(self, since) -> float | None:
        completed = await self.jobs.query(
            JobQuery(types=self.job_types, statuses=[JobStatus.COMPLETED], created_since=since)
        )
        durations = [
            (job.executed_at - job.started_at).total_seconds()
            for job in completed
            if job.executed_at is not None and job.started_at is not None
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)


__all__ = ["CaptureExecutor"]
