"""Orchestration of the capture, expiry and reminder executors.

An external trigger (cron, the CLI, an admin action) calls
:meth:`JobScheduler.process_all_jobs`; authorization lifecycle hooks call
:meth:`JobScheduler.schedule_all_jobs_for_authorization` and
:meth:`JobScheduler.cancel_all_jobs_for_authorization`. Every batch and
validation step is isolated so one failing step never prevents the others.
"""

from __future__ import annotations

from datetime import timedelta
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable

from .clock import Clock, SystemClock
from .contracts import (
    AuditSink,
    AuthorizationStore,
    JobQuery,
    JobStore,
    NotificationService,
    PaymentGateway,
)
from .executors import CaptureExecutor, ExpiryExecutor, ReminderExecutor
from .executors.base import empty_batch_results
from .models import (
    FINISHED_JOB_STATUSES,
    JobStatus,
    PaymentAuthorization,
    ScheduledJob,
    retry_delay,
)
from .settings import SchedulerSettings

logger = logging.getLogger(__name__)

STUCK_JOB_MESSAGE = "Job stuck in running state"


class JobScheduler:
    """Facade over the three executors sharing one job store.

    Parameters:
        capture: Executor for auto-capture jobs.
        expiry: Executor for expiry jobs.
        reminder: Executor for confirmation and payment reminders.
        clock: Time source; defaults to the capture executor's clock.
        settings: Defaults to the capture executor's settings.
    """

    def __init__(
        self,
        capture: CaptureExecutor,
        expiry: ExpiryExecutor,
        reminder: ReminderExecutor,
        *,
        clock: Clock | None = None,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.capture = capture
        self.expiry = expiry
        self.reminder = reminder
        self.clock = clock or capture.clock or SystemClock()
        self.settings = settings or capture.settings
        self.jobs = capture.jobs
        self.authorizations = capture.authorizations

    @classmethod
    def from_stores(
        cls,
        jobs: JobStore,
        authorizations: AuthorizationStore,
        *,
        gateway: PaymentGateway,
        notifier: NotificationService,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
        settings: SchedulerSettings | None = None,
    ) -> "JobScheduler":
        """Build the three executors over shared stores and wrap them."""

        clock = clock or SystemClock()
        settings = settings or SchedulerSettings()
        common = dict(
            jobs=jobs, authorizations=authorizations, audit=audit, clock=clock, settings=settings
        )
        return cls(
            CaptureExecutor(gateway=gateway, **common),
            ExpiryExecutor(gateway=gateway, **common),
            ReminderExecutor(notifier=notifier, **common),
            clock=clock,
            settings=settings,
        )

    async def process_all_jobs(self) -> dict[str, Any]:
        started = perf_counter()
        results: dict[str, Any] = {
            "execution_time_ms": 0.0,
            "total_processed": 0,
            "capture_jobs": empty_batch_results(),
            "expiry_jobs": empty_batch_results(),
            "reminder_jobs": empty_batch_results(),
            "errors": [],
        }
        batches: list[tuple[str, str, Callable[[], Awaitable[dict[str, int]]]]] = [
            ("capture_jobs", "capture", self.capture.process_all_pending_captures),
            ("expiry_jobs", "expiry", self.expiry.process_all_pending_expiries),
            ("reminder_jobs", "reminder", self.reminder.process_all_pending_reminders),
        ]
        for key, label, run in batches:
            try:
                batch = await run()
            except Exception as exc:
                logger.error("batch failed: batch=%s error=%s", label, exc, exc_info=True)
                results["errors"].append(f"{label} jobs error: {exc}")
                continue
            results[key] = batch
            results["total_processed"] += batch["processed"]

        results["execution_time_ms"] = round((perf_counter() - started) * 1000, 2)
        logger.info(
            "all jobs processed: total=%s errors=%s elapsed_ms=%s",
            results["total_processed"],
            len(results["errors"]),
            results["execution_time_ms"],
        )
        return results

    async def _plan(self, authorization: PaymentAuthorization) -> list[tuple[ScheduledJob, bool]]:
        planned: list[tuple[ScheduledJob, bool]] = []
        try:
            planned.extend(await self.expiry.plan_expiry(authorization))
        except Exception:
            logger.exception("expiry scheduling failed: authorization_id=%s", authorization.id)

        if (
            authorization.is_confirmed()
            and authorization.auto_capture_at is not None
            and authorization.auto_capture_at >= self.clock.now()
        ):
            try:
                planned.append(await self.capture.plan_capture(authorization))
            except Exception:
                logger.exception("capture scheduling failed: authorization_id=%s", authorization.id)

        try:
            planned.extend(await self.reminder.plan_reminders(authorization))
        except Exception:
            logger.exception("reminder scheduling failed: authorization_id=%s", authorization.id)
        return planned

    async def schedule_all_jobs_for_authorization(
        self, authorization: PaymentAuthorization
    ) -> list[ScheduledJob]:
        """Plan every job ``authorization`` needs in its current state.

        Returns the planned jobs; pending jobs that already existed are
        returned as they are instead of being duplicated.
        """

        planned = await self._plan(authorization)
        logger.info(
            "jobs planned: authorization_id=%s planned=%s created=%s",
            authorization.id,
            len(planned),
            sum(1 for _, created in planned if created),
        )
        return [job for job, _ in planned]

    async def cancel_all_jobs_for_authorization(
        self, authorization: PaymentAuthorization, reason: str = "authorization processed"
    ) -> int:
        cancelled = await self.jobs.cancel_pending_for_authorization(authorization.id, reason)
        if cancelled:
            logger.info(
                "jobs cancelled: authorization_id=%s count=%s reason=%s",
                authorization.id,
                cancelled,
                reason,
            )
        return cancelled

    async def get_queue_status(self) -> dict[str, Any]:
        now = self.clock.now()
        status: dict[str, Any] = dict(await self.jobs.queue_stats())
        pending = [JobStatus.PENDING]
        status["by_type"] = await self.jobs.count_by(JobQuery(statuses=pending), "type")
        status["overdue"] = await self.jobs.count(
            JobQuery(statuses=pending, scheduled_before=now - self.settings.overdue_grace)
        )
        upcoming = await self.jobs.query(
            JobQuery(
                statuses=pending,
                scheduled_after=now,
                order_by_schedule=True,
                limit=self.settings.upcoming_limit,
            )
        )
        status["upcoming"] = [
            {
                "id": str(job.id),
                "type": job.type.value,
                "scheduled_at": job.scheduled_at.isoformat(),
                "priority": job.priority,
                "minutes_until_execution": int((job.scheduled_at - now).total_seconds() // 60),
            }
            for job in upcoming
        ]
        return status

    async def cleanup_all_old_jobs(self, days_to_keep: int | None = None) -> dict[str, int]:
        return {
            "capture_jobs_deleted": await self.capture.cleanup_old_jobs(days_to_keep),
            "expiry_jobs_deleted": await self.expiry.cleanup_old_jobs(days_to_keep),
            "reminder_jobs_deleted": await self.reminder.cleanup_old_jobs(days_to_keep),
        }

    async def validate_all_jobs(self) -> dict[str, Any]:
        """Self-healing pass over the whole queue.

        Force-fails stuck running jobs, runs every executor's own
        validation and re-plans active authorizations that lost their jobs.
        """

        results: dict[str, Any] = {"total_issues": 0, "issues": []}
        steps: list[tuple[str, Callable[[], Awaitable[dict[str, Any]]]]] = [
            ("capture_validation", self.capture.validate_scheduled_jobs),
            ("expiry_validation", self.expiry.validate_expiry_jobs),
            ("reminder_validation", self.reminder.validate_reminder_jobs),
            ("general_validation", self._general_validation),
        ]
        for key, run in steps:
            try:
                report = await run()
            except Exception as exc:
                logger.error("validation failed: step=%s error=%s", key, exc, exc_info=True)
                results[key] = {"error": str(exc)}
                continue
            results[key] = report
            results["total_issues"] += report["issues_found"]
            results["issues"].extend(report["issues"])

        if results["total_issues"]:
            logger.info("validation repaired issues: total=%s", results["total_issues"])
        return results

    async def _general_validation(self) -> dict[str, Any]:
        issues: list[str] = []
        now = self.clock.now()

        for job_id in await self.jobs.fail_stuck(now - self.settings.stuck_after, STUCK_JOB_MESSAGE):
            logger.warning("stuck job failed: job_id=%s", job_id)
            issues.append(f"stuck job reset: {job_id}")

        for authorization in await self.authorizations.active():
            planned = await self._plan(authorization)
            if any(created for _, created in planned):
                issues.append(f"jobs scheduled for authorization: {authorization.id}")

        return {"issues_found": len(issues), "issues": issues}

    async def get_system_statistics(self) -> dict[str, Any]:
        return {
            "queue_status": await self.get_queue_status(),
            "capture_stats": await self.capture.get_capture_statistics(),
            "expiry_stats": await self.expiry.get_expiry_statistics(),
            "reminder_stats": await self.reminder.get_reminder_statistics(),
            "performance_metrics": await self._performance_metrics(),
        }

    async def _performance_metrics(self) -> dict[str, Any]:
        since = self.clock.now() - timedelta(days=1)
        finished = await self.jobs.query(
            JobQuery(statuses=FINISHED_JOB_STATUSES, executed_since=since)
        )
        completed = sum(1 for job in finished if job.status is JobStatus.COMPLETED)
        queue_minutes = [
            (job.executed_at - job.scheduled_at).total_seconds() / 60
            for job in finished
            if job.executed_at is not None
        ]
        return {
            "jobs_processed_24h": await self.jobs.count(JobQuery(executed_since=since)),
            "average_queue_time": (
                sum(queue_minutes) / len(queue_minutes) if queue_minutes else None
            ),
            "success_rate_24h": (completed / len(finished)) * 100 if finished else 0.0,
            "peak_queue_size": await self.jobs.count(JobQuery(statuses=[JobStatus.PENDING])),
        }

    async def retry_failed_jobs(self) -> dict[str, Any]:
        """Return retryable failed jobs to the queue with exponential backoff."""

        results: dict[str, Any] = {"retried": 0, "skipped": 0, "errors": []}
        now = self.clock.now()
        for job in await self.jobs.failed_retryable():
            try:
                if not job.can_retry():
                    results["skipped"] += 1
                    continue
                delay = retry_delay(
                    job.attempts,
                    base_minutes=self.settings.retry_base_minutes,
                    cap_minutes=self.settings.retry_cap_minutes,
                )
                if await self.jobs.reschedule(job.id, now + delay, from_status=JobStatus.FAILED):
                    results["retried"] += 1
                    logger.info(
                        "job retry scheduled: job_id=%s attempts=%s delay_minutes=%s",
                        job.id,
                        job.attempts,
                        int(delay.total_seconds() // 60),
                    )
                else:
                    results["skipped"] += 1
            except Exception as exc:
                logger.warning("job retry failed: job_id=%s error=%s", job.id, exc, exc_info=True)
                results["errors"].append(f"retry failed for job {job.id}: {exc}")
        return results


__all__ = ["JobScheduler", "STUCK_JOB_MESSAGE"]
