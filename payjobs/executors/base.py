"""Shared execution machinery for the payment job executors.

Every executor follows the same shape: a job must still be ``pending`` to be
executed, it is claimed with a conditional update, the type-specific work
runs inside a failure boundary, and the outcome is written back as
``completed`` (possibly ``skipped``) or ``failed``. Batches lease their rows
first so overlapping invocations partition the ready set, and each job in a
batch is quarantined so one bad job never aborts its siblings.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
import logging
from time import perf_counter
from typing import Awaitable
from uuid import uuid4

from ..clock import Clock, SystemClock
from ..contracts import AuditEvent, AuditSink, AuthorizationStore, JobQuery, JobStore
from ..models import (
    ErrorKind,
    JobData,
    JobOutcome,
    JobStatus,
    JobType,
    OutcomeStatus,
    PaymentAuthorization,
    ScheduledJob,
)
from ..settings import SchedulerSettings
from .. import metrics

logger = logging.getLogger(__name__)

AUTHORIZATION_NOT_FOUND = "authorization not found"


class CollaboratorError(Exception):
    """A payment gateway or notification call raised."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(str(cause) or repr(cause))
        self.operation = operation


def empty_batch_results() -> dict[str, int]:
    return {"processed": 0, "successful": 0, "failed": 0, "skipped": 0}


class JobExecutor(ABC):
    """Base class for executors bound to one or more job types.

    Parameters:
        jobs: Store holding scheduled jobs.
        authorizations: Read access to payment authorizations.
        audit: Optional audit sink; recording failures are logged and ignored.
        clock: Time source; defaults to the system clock.
        settings: Batch sizes, thresholds and timeouts.
    """

    job_types: tuple[JobType, ...] = ()
    batch_name: str = ""

    def __init__(
        self,
        *,
        jobs: JobStore,
        authorizations: AuthorizationStore,
        audit: AuditSink | None = None,
        clock: Clock | None = None,
        settings: SchedulerSettings | None = None,
    ) -> None:
        self.jobs = jobs
        self.authorizations = authorizations
        self.audit = audit
        self.clock = clock or SystemClock()
        self.settings = settings or SchedulerSettings()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"{type(self).__name__}(job_types={[t.value for t in self.job_types]})"

    async def execute(self, job: ScheduledJob) -> JobOutcome:
        """Run ``job`` once if it is still pending.

        A job that is not pending, or that a concurrent caller claims first,
        is left untouched and reported as ``not_claimed``.
        """

        if not job.is_pending():
            return JobOutcome.not_claimed(job.id)
        claimed = await self.jobs.claim(job.id)
        if claimed is None:
            metrics.claim_conflicts.inc()
            logger.info("job already claimed elsewhere: job_id=%s type=%s", job.id, job.type.value)
            return JobOutcome.not_claimed(job.id)

        try:
            outcome = await self._run(claimed)
        except TimeoutError as exc:
            logger.warning("job timed out: job_id=%s type=%s", claimed.id, claimed.type.value)
            outcome = JobOutcome.failed(claimed.id, ErrorKind.TIMEOUT, str(exc) or "operation timed out")
            await self._audit(self._failure_event(claimed, outcome))
        except CollaboratorError as exc:
            logger.warning(
                "collaborator call failed: job_id=%s type=%s operation=%s error=%s",
                claimed.id,
                claimed.type.value,
                exc.operation,
                exc,
                exc_info=True,
            )
            outcome = JobOutcome.failed(claimed.id, self.failure_kind, str(exc))
            await self._audit(self._failure_event(claimed, outcome))
        except Exception as exc:
            logger.warning(
                "job raised: job_id=%s type=%s error=%s",
                claimed.id,
                claimed.type.value,
                exc,
                exc_info=True,
            )
            outcome = JobOutcome.failed(
                claimed.id, ErrorKind.INTERNAL_ERROR, str(exc) or repr(exc)
            )
            await self._audit(self._failure_event(claimed, outcome))

        await self._persist(claimed, outcome)
        return outcome

    @abstractmethod
    async def _run(self, job: ScheduledJob) -> JobOutcome:
        """Perform the type-specific work for a claimed (running) job."""

    # Error kind recorded when a collaborator call raises.
    failure_kind: ErrorKind = ErrorKind.GATEWAY_FAILURE

    def _failure_event(self, job: ScheduledJob, outcome: JobOutcome) -> AuditEvent | None:
        """Audit event recorded when ``_run`` raises; ``None`` records nothing."""

        return None

    def _carried_result(self, job: ScheduledJob) -> dict:
        """Parts of the previous ``result`` a failed attempt must keep."""

        return {}

    async def _persist(self, job: ScheduledJob, outcome: JobOutcome) -> None:
        if outcome.status is OutcomeStatus.FAILED:
            result = {**self._carried_result(job), **outcome.result}
            if outcome.error_kind is not None:
                result["error_kind"] = outcome.error_kind.value
            await self.jobs.fail(job.id, outcome.message or "job failed", result)
            logger.info(
                "job failed: job_id=%s type=%s error_kind=%s message=%s",
                job.id,
                job.type.value,
                outcome.error_kind.value if outcome.error_kind else None,
                outcome.message,
            )
        else:
            await self.jobs.complete(job.id, outcome.result)
            logger.info(
                "job completed: job_id=%s type=%s skipped=%s",
                job.id,
                job.type.value,
                outcome.status is OutcomeStatus.SKIPPED,
            )
        metrics.jobs_executed.labels(job.type.value, outcome.status.value).inc()

    async def _process_batch(self, limit: int) -> dict[str, int]:
        started = perf_counter()
        results = empty_batch_results()
        batch = await self.jobs.claim_ready(
            self.job_types,
            limit=limit,
            owner=uuid4(),
            lease_ttl_s=self.settings.lease_ttl_s,
        )
        for job in batch:
            results["processed"] += 1
            try:
                outcome = await self.execute(job)
                if outcome:
                    fresh = await self.jobs.get(job.id)
                    if fresh is not None and fresh.skipped:
                        results["skipped"] += 1
                    else:
                        results["successful"] += 1
                elif outcome.status is OutcomeStatus.NOT_CLAIMED:
                    results["skipped"] += 1
                else:
                    results["failed"] += 1
            except Exception:
                results["failed"] += 1
                logger.exception(
                    "error while processing job: batch=%s job_id=%s", self.batch_name, job.id
                )
        metrics.batch_duration.labels(self.batch_name).observe(perf_counter() - started)
        if results["processed"]:
            logger.info(
                "batch finished: batch=%s processed=%s successful=%s failed=%s skipped=%s",
                self.batch_name,
                results["processed"],
                results["successful"],
                results["failed"],
                results["skipped"],
            )
        return results

    async def _schedule(
        self,
        authorization: PaymentAuthorization,
        job_type: JobType,
        *,
        scheduled_at: datetime,
        data: JobData,
        priority: int,
    ) -> tuple[ScheduledJob, bool]:
        """Create a pending job unless one already holds the same dedup key."""

        candidate = ScheduledJob.for_authorization(
            authorization,
            job_type,
            scheduled_at=scheduled_at,
            data=data,
            priority=priority,
            max_attempts=self.settings.max_attempts,
        )
        existing = await self.jobs.find_pending(authorization.id, job_type, candidate.subtype)
        if existing is not None:
            return existing, False
        job, created = await self.jobs.create(candidate)
        if created:
            logger.info(
                "job scheduled: job_id=%s type=%s authorization_id=%s scheduled_at=%s",
                job.id,
                job_type.value,
                authorization.id,
                scheduled_at.isoformat(),
            )
        return job, created

    async def _call(self, operation: str, call: Awaitable[bool], timeout_s: float) -> bool:
        """Await a collaborator call under ``timeout_s`` and record its latency.

        Exceptions other than the timeout are re-raised as
        :class:`CollaboratorError`.
        """

        started = perf_counter()
        try:
            async with asyncio.timeout(timeout_s):
                return bool(await call)
        except TimeoutError:
            raise
        except Exception as exc:
            raise CollaboratorError(operation, exc) from exc
        finally:
            metrics.collaborator_latency.labels(operation).observe(perf_counter() - started)

    async def _audit(self, event: AuditEvent | None) -> None:
        if event is None or self.audit is None:
            return
        try:
            await self.audit.record(replace(event, recorded_at=event.recorded_at or self.clock.now()))
        except Exception:
            logger.warning(
                "audit record failed: event_type=%s authorization_id=%s",
                event.event_type.value,
                event.payment_authorization_id,
                exc_info=True,
            )

    async def _cancel_orphans(self, issues: list[str]) -> None:
        pending = await self.jobs.query(
            JobQuery(types=self.job_types, statuses=[JobStatus.PENDING])
        )
        if not pending:
            return
        existing = await self.authorizations.existing_ids(
            {job.payment_authorization_id for job in pending}
        )
        for job in pending:
            if job.payment_authorization_id in existing:
                continue
            if await self.jobs.cancel(job.id, "payment authorization not found"):
                issues.append(f"orphaned job cancelled: {job.id}")

    def _since(self, days: int) -> datetime:
        return self.clock.now() - timedelta(days=days)

    async def cleanup_old_jobs(self, days_to_keep: int | None = None) -> int:
        """Delete completed and cancelled jobs older than the retention window."""

        days = days_to_keep if days_to_keep is not None else self.settings.retention_days
        deleted = await self.jobs.delete_terminal(self.job_types, self._since(days))
        if deleted:
            logger.info("old jobs deleted: batch=%s deleted=%s days=%s", self.batch_name, deleted, days)
        return deleted

    @staticmethod
    def _success_rate(by_status: dict[str, int]) -> float:
        completed = by_status.get(JobStatus.COMPLETED.value, 0)
        total = completed + by_status.get(JobStatus.FAILED.value, 0)
        return (completed / total) * 100 if total else 0.0
