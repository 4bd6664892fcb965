"""Confirmation and imminent-capture reminders."""

from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from .base import AUTHORIZATION_NOT_FOUND, JobExecutor
from ..contracts import (
    AuditEvent,
    AuditEventType,
    JobQuery,
    NotificationService,
    ReminderContext,
)
from ..models import (
    PRIORITY_REMINDER,
    REMINDER_JOB_TYPES,
    AuthorizationStatus,
    ConfirmationReminderData,
    ErrorKind,
    JobOutcome,
    JobStatus,
    JobType,
    Participant,
    PaymentAuthorization,
    PaymentReminderData,
    ReminderType,
    ScheduledJob,
)

logger = logging.getLogger(__name__)

SENDER = "sender"
TRANSPORTER = "transporter"

_REMINDER_TYPES = {
    JobType.CONFIRMATION_REMINDER: ReminderType.CONFIRMATION,
    JobType.PAYMENT_REMINDER: ReminderType.PAYMENT,
}


def _participant_info(participant: Participant | None) -> dict[str, Any]:
    if participant is None:
        return {"user_id": None, "email": None}
    return {"user_id": participant.user_id, "email": participant.email}


class ReminderExecutor(JobExecutor):
    job_types = REMINDER_JOB_TYPES
    batch_name = "reminder"
    failure_kind = ErrorKind.NOTIFICATION_FAILURE

    def __init__(self, *, notifier: NotificationService, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.notifier = notifier

    def is_reminder_relevant(
        self, authorization: PaymentAuthorization, reminder_type: ReminderType
    ) -> bool:
        now = self.clock.now()
        if reminder_type is ReminderType.CONFIRMATION:
            return authorization.is_pending() and not authorization.is_confirmation_expired(now)
        if reminder_type is ReminderType.PAYMENT:
            return authorization.is_confirmed() and not authorization.is_capture_expired(now)
        return False

    def confirmation_url(self, authorization: PaymentAuthorization) -> str:
        return (
            f"{self.settings.frontend_url.rstrip('/')}"
            f"/booking/{authorization.booking_id}/confirm-payment"
        )

    def _confirmation_context(self, authorization: PaymentAuthorization) -> ReminderContext:
        minutes = authorization.remaining_confirmation_minutes(self.clock.now()) or 0
        return ReminderContext(
            authorization=authorization,
            reminder_type=ReminderType.CONFIRMATION,
            hours_remaining=max(0.0, round(minutes / 60, 1)),
            confirmation_url=self.confirmation_url(authorization),
        )

    def _payment_context(
        self, authorization: PaymentAuthorization, hours_before_capture: int | str
    ) -> ReminderContext:
        return ReminderContext(
            authorization=authorization,
            reminder_type=ReminderType.PAYMENT,
            hours_until_capture=hours_before_capture,
            capture_date=authorization.auto_capture_at,
        )

    async def _send_confirmation(self, authorization: PaymentAuthorization) -> bool:
        if authorization.sender is None:
            logger.warning("confirmation reminder without sender: authorization_id=%s", authorization.id)
            return False
        return await self._call(
            "notify_confirmation",
            self.notifier.send_confirmation_reminder(
                authorization.sender, self._confirmation_context(authorization)
            ),
            self.settings.notification_timeout_s,
        )

    async def _send_capture(
        self,
        authorization: PaymentAuthorization,
        context: ReminderContext,
        role: str,
    ) -> bool:
        user = authorization.sender if role == SENDER else authorization.transporter
        if user is None:
            logger.warning(
                "capture reminder without recipient: authorization_id=%s role=%s",
                authorization.id,
                role,
            )
            return False
        return await self._call(
            "notify_capture",
            self.notifier.send_capture_reminder(user, context, role),
            self.settings.notification_timeout_s,
        )

    async def _send_payment_reminders(
        self,
        authorization: PaymentAuthorization,
        hours_before_capture: int | str,
        already_notified: set[str],
    ) -> list[str]:
        """Send capture reminders to recipients not yet notified.

        Returns every role notified so far, including ``already_notified``.
        A failing recipient does not prevent the other one from being tried.
        """

        context = self._payment_context(authorization, hours_before_capture)
        notified = [role for role in (SENDER, TRANSPORTER) if role in already_notified]
        for role in (SENDER, TRANSPORTER):
            if role in already_notified:
                continue
            try:
                sent = await self._send_capture(authorization, context, role)
            except Exception as exc:
                logger.warning(
                    "capture reminder send failed: authorization_id=%s role=%s error=%s",
                    authorization.id,
                    role,
                    exc,
                )
                sent = False
            if sent:
                notified.append(role)
        return notified

    def _recipient_info(
        self, authorization: PaymentAuthorization, reminder_type: ReminderType
    ) -> dict[str, Any]:
        if reminder_type is ReminderType.CONFIRMATION:
            return {**_participant_info(authorization.sender), "role": SENDER}
        return {
            SENDER: _participant_info(authorization.sender),
            TRANSPORTER: _participant_info(authorization.transporter),
        }

    async def _run(self, job: ScheduledJob) -> JobOutcome:
        authorization = await self.authorizations.get(job.payment_authorization_id)
        if authorization is None:
            return JobOutcome.failed(job.id, ErrorKind.NOT_FOUND, AUTHORIZATION_NOT_FOUND)

        reminder_type = _REMINDER_TYPES[job.type]
        if not self.is_reminder_relevant(authorization, reminder_type):
            return JobOutcome.skipped(
                job.id,
                {
                    "reason": "reminder no longer relevant",
                    "current_status": authorization.status.value,
                    "reminder_type": reminder_type.value,
                },
            )

        result: dict[str, Any] = {}
        if reminder_type is ReminderType.CONFIRMATION:
            sent = await self._send_confirmation(authorization)
        else:
            data = job.data
            previous = set((job.result or {}).get("notified_roles") or ())
            notified = await self._send_payment_reminders(
                authorization, data.hours_before_capture, previous
            )
            result["notified_roles"] = notified
            sent = len(notified) == 2

        if not sent:
            outcome = JobOutcome.failed(
                job.id,
                ErrorKind.NOTIFICATION_FAILURE,
                "failed to send reminder notification",
                result,
            )
            await self._audit(self._failure_event(job, outcome))
            return outcome

        await self._audit(
            AuditEvent(
                event_type=AuditEventType.NOTIFICATION_SENT,
                payment_authorization_id=authorization.id,
                booking_id=authorization.booking_id,
                success=True,
                event_data={
                    "job_id": str(job.id),
                    "reminder_type": reminder_type.value,
                    "notification_method": "automatic_reminder",
                },
            )
        )
        return JobOutcome.succeeded(
            job.id,
            {
                **result,
                "reminder_sent": True,
                "reminder_type": reminder_type.value,
                "authorization_id": authorization.id,
                "recipient": self._recipient_info(authorization, reminder_type),
            },
        )

    def _failure_event(self, job: ScheduledJob, outcome: JobOutcome) -> AuditEvent | None:
        return AuditEvent(
            event_type=AuditEventType.NOTIFICATION_SENT,
            payment_authorization_id=job.payment_authorization_id,
            booking_id=job.booking_id,
            success=False,
            error_message=outcome.message,
            error_kind=outcome.error_kind,
            event_data={"job_id": str(job.id), "execution_type": "automatic_reminder"},
        )

    def _carried_result(self, job: ScheduledJob) -> dict:
        roles = (job.result or {}).get("notified_roles")
        return {"notified_roles": list(roles)} if roles else {}

    async def process_all_pending_reminders(self) -> dict[str, int]:
        return await self._process_batch(self.settings.reminder_batch_size)

    async def schedule_reminders(self, authorization: PaymentAuthorization) -> list[ScheduledJob]:
        return [job for job, created in await self.plan_reminders(authorization) if created]

    async def plan_reminders(
        self, authorization: PaymentAuthorization
    ) -> list[tuple[ScheduledJob, bool]]:
        now = self.clock.now()
        planned: list[tuple[ScheduledJob, bool]] = []
        if authorization.is_pending() and authorization.confirmation_deadline is not None:
            lead = self.settings.confirmation_reminder_lead
            remind_at = authorization.confirmation_deadline - lead
            if remind_at > now:
                planned.append(
                    await self._schedule(
                        authorization,
                        JobType.CONFIRMATION_REMINDER,
                        scheduled_at=remind_at,
                        data=ConfirmationReminderData(
                            hours_before_expiry=int(lead.total_seconds() // 3600)
                        ),
                        priority=PRIORITY_REMINDER,
                    )
                )
        if authorization.is_confirmed() and authorization.auto_capture_at is not None:
            lead = self.settings.payment_reminder_lead
            remind_at = authorization.auto_capture_at - lead
            if remind_at > now:
                planned.append(
                    await self._schedule(
                        authorization,
                        JobType.PAYMENT_REMINDER,
                        scheduled_at=remind_at,
                        data=PaymentReminderData(
                            hours_before_capture=int(lead.total_seconds() // 3600)
                        ),
                        priority=PRIORITY_REMINDER,
                    )
                )
        return planned

    async def send_manual_reminder(
        self, authorization: PaymentAuthorization, reminder_type: ReminderType | str
    ) -> JobOutcome:
        """Send a reminder right away, outside the job queue.

        The outcome carries ``ErrorKind.VALIDATION_ERROR`` when the
        authorization is not in the status the reminder type requires.
        """

        try:
            reminder_type = ReminderType(reminder_type)
        except ValueError:
            return JobOutcome.failed(
                None, ErrorKind.VALIDATION_ERROR, f"invalid reminder type: {reminder_type}"
            )

        if reminder_type is ReminderType.CONFIRMATION and not authorization.is_pending():
            return JobOutcome.failed(
                None,
                ErrorKind.VALIDATION_ERROR,
                "authorization no longer requires confirmation",
            )
        if reminder_type is ReminderType.PAYMENT and not authorization.is_confirmed():
            return JobOutcome.failed(
                None, ErrorKind.VALIDATION_ERROR, "authorization is not confirmed"
            )

        result: dict[str, Any] = {}
        try:
            if reminder_type is ReminderType.CONFIRMATION:
                sent = await self._send_confirmation(authorization)
            else:
                notified = await self._send_payment_reminders(authorization, "immediate", set())
                result["notified_roles"] = notified
                sent = len(notified) == 2
        except TimeoutError:
            return JobOutcome.failed(None, ErrorKind.TIMEOUT, "notification timed out", result)
        except Exception as exc:
            logger.warning(
                "manual reminder failed: authorization_id=%s type=%s error=%s",
                authorization.id,
                reminder_type.value,
                exc,
            )
            return JobOutcome.failed(None, ErrorKind.NOTIFICATION_FAILURE, str(exc), result)

        if not sent:
            return JobOutcome.failed(
                None,
                ErrorKind.NOTIFICATION_FAILURE,
                "failed to send reminder notification",
                result,
            )
        return JobOutcome.succeeded(
            None,
            {
                **result,
                "reminder_sent": True,
                "reminder_type": reminder_type.value,
                "authorization_id": authorization.id,
                "recipient": self._recipient_info(authorization, reminder_type),
            },
        )

    async def validate_reminder_jobs(self) -> dict[str, Any]:
        issues: list[str] = []
        now = self.clock.now()

        await self._cancel_orphans(issues)

        overdue = await self.jobs.query(
            JobQuery(
                types=self.job_types,
                statuses=[JobStatus.PENDING],
                scheduled_before=now - self.settings.reminder_overdue_after,
            )
        )
        for job in overdue:
            authorization = await self.authorizations.get(job.payment_authorization_id)
            if authorization is not None and self.is_reminder_relevant(
                authorization, _REMINDER_TYPES[job.type]
            ):
                continue
            if await self.jobs.cancel(job.id, "reminder no longer relevant"):
                issues.append(f"stale reminder job cancelled: {job.id}")

        return {"issues_found": len(issues), "issues": issues}

    async def get_reminder_statistics(self, days: int | None = None) -> dict[str, Any]:
        days = days if days is not None else self.settings.statistics_days
        since = self._since(days)
        now = self.clock.now()
        window = JobQuery(types=self.job_types, created_since=since)
        by_type = await self.jobs.count_by(window, "type")
        return {
            "total_reminder_jobs": sum(by_type.values()),
            "by_type": by_type,
            "by_status": await self.jobs.count_by(window, "status"),
            "effectiveness": await self._effectiveness(since),
            "upcoming_reminders": await self.jobs.count_by(
                JobQuery(
                    types=self.job_types,
                    statuses=[JobStatus.PENDING],
                    scheduled_after=now,
                    scheduled_not_after=now + timedelta(days=1),
                ),
                "type",
            ),
        }

    async def _effectiveness(self, since) -> dict[str, Any]:
        sent = [
            job
            for job in await self.jobs.query(
                JobQuery(
                    types=[JobType.CONFIRMATION_REMINDER],
                    statuses=[JobStatus.COMPLETED],
                    executed_since=since,
                )
            )
            if not job.skipped
        ]
        converted = 0
        if sent:
            confirmed = {
                a.id
                for a in await self.authorizations.list_by_status(
                    [AuthorizationStatus.CONFIRMED, AuthorizationStatus.CAPTURED]
                )
            }
            converted = sum(1 for job in sent if job.payment_authorization_id in confirmed)
        rate = round(converted / len(sent) * 100, 1) if sent else 0.0

        payment_sent = [
            job
            for job in await self.jobs.query(
                JobQuery(
                    types=[JobType.PAYMENT_REMINDER],
                    statuses=[JobStatus.COMPLETED],
                    executed_since=since,
                )
            )
            if not job.skipped
        ]
        return {
            "confirmation_reminder_success_rate": rate,
            "total_confirmation_reminders": len(sent),
            "payment_reminders_sent": len(payment_sent),
        }


__all__ = ["ReminderExecutor", "SENDER", "TRANSPORTER"]
