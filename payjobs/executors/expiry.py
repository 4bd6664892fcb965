"""Expiry of authorizations whose confirmation or capture deadline passed."""

from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from .base import AUTHORIZATION_NOT_FOUND, JobExecutor
from ..contracts import AuditEvent, AuditEventType, JobQuery, PaymentGateway
from ..models import (
    PRIORITY_EXPIRY,
    ErrorKind,
    ExpiryData,
    ExpiryType,
    JobOutcome,
    JobStatus,
    JobType,
    PaymentAuthorization,
    ScheduledJob,
)

logger = logging.getLogger(__name__)

CONFIRMATION_DEADLINE_PASSED = "confirmation deadline passed"
CAPTURE_DEADLINE_PASSED = "capture deadline passed"


class ExpiryExecutor(JobExecutor):
    job_types = (JobType.PAYMENT_EXPIRY,)
    batch_name = "expiry"
    failure_kind = ErrorKind.GATEWAY_FAILURE

    def __init__(self, *, gateway: PaymentGateway, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.gateway = gateway

    def _expiry_reason(
        self, authorization: PaymentAuthorization, expiry_type: ExpiryType | None
    ) -> str | None:
        """Return why ``authorization`` has expired, or ``None`` if it has not."""

        now = self.clock.now()
        if expiry_type is ExpiryType.CONFIRMATION:
            return CONFIRMATION_DEADLINE_PASSED if authorization.is_confirmation_expired(now) else None
        if expiry_type is ExpiryType.CAPTURE:
            return CAPTURE_DEADLINE_PASSED if authorization.is_capture_expired(now) else None
        if authorization.is_confirmation_expired(now):
            return CONFIRMATION_DEADLINE_PASSED
        if authorization.is_capture_expired(now):
            return CAPTURE_DEADLINE_PASSED
        return None

    async def _run(self, job: ScheduledJob) -> JobOutcome:
        authorization = await self.authorizations.get(job.payment_authorization_id)
        if authorization is None:
            return JobOutcome.failed(job.id, ErrorKind.NOT_FOUND, AUTHORIZATION_NOT_FOUND)

        data = job.data
        expiry_type = data.expiry_type.value if data.expiry_type else "unknown"

        if authorization.is_terminal():
            return JobOutcome.skipped(
                job.id,
                {
                    "reason": "authorization already in final state",
                    "current_status": authorization.status.value,
                },
            )
        reason = self._expiry_reason(authorization, data.expiry_type)
        if reason is None:
            return JobOutcome.skipped(
                job.id,
                {
                    "reason": "authorization not yet expired",
                    "current_status": authorization.status.value,
                    "expiry_type": expiry_type,
                },
            )

        expired = await self._call(
            "expire", self.gateway.expire(authorization), self.settings.gateway_timeout_s
        )
        if not expired:
            outcome = JobOutcome.failed(
                job.id, ErrorKind.GATEWAY_FAILURE, "failed to expire authorization"
            )
            await self._audit(self._failure_event(job, outcome))
            return outcome

        await self._audit(
            AuditEvent(
                event_type=AuditEventType.AUTHORIZATION_EXPIRED,
                payment_authorization_id=authorization.id,
                booking_id=authorization.booking_id,
                success=True,
                event_data={
                    "job_id": str(job.id),
                    "expiry_reason": reason,
                    "expiry_type": expiry_type,
                    "execution_type": "automatic",
                },
            )
        )
        return JobOutcome.succeeded(
            job.id,
            {
                "expired_authorization_id": authorization.id,
                "expiry_reason": reason,
                "expiry_type": expiry_type,
            },
        )

    def _failure_event(self, job: ScheduledJob, outcome: JobOutcome) -> AuditEvent | None:
        return AuditEvent(
            event_type=AuditEventType.AUTHORIZATION_EXPIRED,
            payment_authorization_id=job.payment_authorization_id,
            booking_id=job.booking_id,
            success=False,
            error_message=outcome.message,
            error_kind=outcome.error_kind,
            event_data={"job_id": str(job.id), "execution_type": "automatic"},
        )

    async def process_all_pending_expiries(self) -> dict[str, int]:
        return await self._process_batch(self.settings.expiry_batch_size)

    async def process_expired_authorizations(self) -> dict[str, int]:
        """Expire overdue authorizations straight from the authorization store.

        Runs independently of the job queue and catches authorizations whose
        expiry job was never scheduled or was lost.
        """

        results = {
            "confirmation_expired": 0,
            "capture_expired": 0,
            "already_processed": 0,
            "errors": 0,
        }
        now = self.clock.now()
        sweeps = (
            ("confirmation_expired", await self.authorizations.expired(now)),
            ("capture_expired", await self.authorizations.expired_confirmed(now)),
        )
        for bucket, authorizations in sweeps:
            for authorization in authorizations:
                if authorization.is_expired():
                    results["already_processed"] += 1
                    continue
                try:
                    expired = await self._call(
                        "expire",
                        self.gateway.expire(authorization),
                        self.settings.gateway_timeout_s,
                    )
                except Exception:
                    results["errors"] += 1
                    logger.exception(
                        "direct expiry failed: authorization_id=%s bucket=%s",
                        authorization.id,
                        bucket,
                    )
                    continue
                if expired:
                    results[bucket] += 1
                else:
                    results["errors"] += 1
                    logger.warning(
                        "direct expiry rejected by gateway: authorization_id=%s", authorization.id
                    )
        return results

    async def schedule_expiry(self, authorization: PaymentAuthorization) -> list[ScheduledJob]:
        """Plan confirmation- and capture-deadline expiry jobs as applicable.

        Returns the jobs created by this call; existing pending jobs are left
        as they are.
        """

        return [job for job, created in await self.plan_expiry(authorization) if created]

    async def plan_expiry(
        self, authorization: PaymentAuthorization
    ) -> list[tuple[ScheduledJob, bool]]:
        planned: list[tuple[ScheduledJob, bool]] = []
        if authorization.is_pending() and authorization.confirmation_deadline is not None:
            planned.append(
                await self._schedule(
                    authorization,
                    JobType.PAYMENT_EXPIRY,
                    scheduled_at=authorization.confirmation_deadline,
                    data=ExpiryData(expiry_type=ExpiryType.CONFIRMATION),
                    priority=PRIORITY_EXPIRY,
                )
            )
        if (
            authorization.is_confirmed()
            and authorization.expires_at is not None
            and authorization.expires_at >= self.clock.now()
        ):
            planned.append(
                await self._schedule(
                    authorization,
                    JobType.PAYMENT_EXPIRY,
                    scheduled_at=authorization.expires_at,
                    data=ExpiryData(expiry_type=ExpiryType.CAPTURE),
                    priority=PRIORITY_EXPIRY,
                )
            )
        return planned

    async def validate_expiry_jobs(self) -> dict[str, Any]:
        issues: list[str] = []
        now = self.clock.now()

        overdue = await self.jobs.query(
            JobQuery(
                types=self.job_types,
                statuses=[JobStatus.PENDING],
                scheduled_before=now - self.settings.expiry_overdue_after,
            )
        )
        for job in overdue:
            if await self.authorizations.get(job.payment_authorization_id) is None:
                if await self.jobs.cancel(job.id, "payment authorization not found"):
                    issues.append(f"orphaned expiry job cancelled: {job.id}")
                continue
            try:
                outcome = await self.execute(job)
            except Exception as exc:
                logger.exception("overdue expiry job raised: job_id=%s", job.id)
                issues.append(f"overdue expiry job failed: {job.id}: {exc}")
                continue
            if outcome:
                issues.append(f"overdue expiry job executed: {job.id}")
            else:
                issues.append(f"overdue expiry job failed: {job.id}")

        tracked = await self.jobs.authorization_ids_with_jobs(
            self.job_types, [JobStatus.COMPLETED, JobStatus.RUNNING]
        )
        untracked = [
            authorization
            for authorization in [
                *await self.authorizations.expired(now),
                *await self.authorizations.expired_confirmed(now),
            ]
            if authorization.id not in tracked
        ]
        for authorization in untracked:
            try:
                expired = await self._call(
                    "expire", self.gateway.expire(authorization), self.settings.gateway_timeout_s
                )
            except Exception as exc:
                logger.warning(
                    "manual expiry failed: authorization_id=%s error=%s", authorization.id, exc
                )
                issues.append(f"manual expiry failed: {authorization.id}: {exc}")
                continue
            if not expired:
                logger.warning(
                    "manual expiry rejected by gateway: authorization_id=%s", authorization.id
                )
                issues.append(f"manual expiry rejected: {authorization.id}")
                continue
            issues.append(f"authorization expired manually: {authorization.id}")

        return {"issues_found": len(issues), "issues": issues}

    async def get_expiry_statistics(self, days: int | None = None) -> dict[str, Any]:
        days = days if days is not None else self.settings.statistics_days
        since = self._since(days)
        now = self.clock.now()
        by_status = await self.jobs.count_by(
            JobQuery(types=self.job_types, created_since=since), "status"
        )

        completed = await self.jobs.query(
            JobQuery(types=self.job_types, statuses=[JobStatus.COMPLETED], executed_since=since)
        )
        breakdown = {ExpiryType.CONFIRMATION.value: 0, ExpiryType.CAPTURE.value: 0, "unknown": 0}
        expired = 0
        for job in completed:
            if job.skipped:
                continue
            expired += 1
            expiry_type = (job.result or {}).get("expiry_type") or "unknown"
            breakdown[expiry_type] = breakdown.get(expiry_type, 0) + 1

        pending = [JobStatus.PENDING]
        return {
            "total_expiry_jobs": sum(by_status.values()),
            "by_status": by_status,
            "expired_authorizations": expired,
            "by_expiry_type": breakdown,
            "upcoming_expiries": {
                "next_24h": await self.jobs.count(
                    JobQuery(
                        types=self.job_types,
                        statuses=pending,
                        scheduled_after=now,
                        scheduled_not_after=now + timedelta(days=1),
                    )
                ),
                "next_week": await self.jobs.count(
                    JobQuery(
                        types=self.job_types,
                        statuses=pending,
                        scheduled_after=now + timedelta(days=1),
                        scheduled_not_after=now + timedelta(weeks=1),
                    )
                ),
            },
        }


__all__ = ["ExpiryExecutor"]
