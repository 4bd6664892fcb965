"""Domain types shared by the stores, executors and scheduler."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Union
from uuid import UUID, uuid4


class JobType(str, Enum):
    AUTO_CAPTURE = "auto_capture"
    PAYMENT_EXPIRY = "payment_expiry"
    CONFIRMATION_REMINDER = "confirmation_reminder"
    PAYMENT_REMINDER = "payment_reminder"


REMINDER_JOB_TYPES = (JobType.CONFIRMATION_REMINDER, JobType.PAYMENT_REMINDER)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED)
FINISHED_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class AuthorizationStatus(str, Enum):
    PENDING = "pending"
    PENDING_STRIPE_CONFIG = "pending_stripe_config"
    CONFIRMED = "confirmed"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


class ExpiryType(str, Enum):
    CONFIRMATION = "confirmation"
    CAPTURE = "capture"


class ReminderType(str, Enum):
    CONFIRMATION = "confirmation"
    PAYMENT = "payment"


class ErrorKind(str, Enum):
    GATEWAY_FAILURE = "gateway_failure"
    NOTIFICATION_FAILURE = "notification_failure"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"
    VALIDATION_ERROR = "validation_error"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


CAPTURE_REASON_AUTO_72H = "auto_72h"

PRIORITY_CAPTURE = 1
PRIORITY_EXPIRY = 3
PRIORITY_REMINDER = 5


# Typed job payloads. ``job_data`` is persisted as a plain mapping and decoded
# against the job type whenever an executor reads it.


@dataclass(frozen=True, slots=True)
class CaptureData:
    capture_reason: str = CAPTURE_REASON_AUTO_72H
    payment_intent_id: str | None = None


@dataclass(frozen=True, slots=True)
class ExpiryData:
    expiry_type: ExpiryType | None = None


@dataclass(frozen=True, slots=True)
class ConfirmationReminderData:
    hours_before_expiry: int = 2


@dataclass(frozen=True, slots=True)
class PaymentReminderData:
    hours_before_capture: int | str = 24


JobData = Union[CaptureData, ExpiryData, ConfirmationReminderData, PaymentReminderData]


def decode_job_data(job_type: JobType, raw: dict | None) -> JobData:
    """Decode a persisted ``job_data`` mapping into its typed payload.

    Unknown keys are ignored and missing keys fall back to defaults, so rows
    written by older code keep decoding.
    """

    raw = raw or {}
    if job_type is JobType.AUTO_CAPTURE:
        return CaptureData(
            capture_reason=raw.get("capture_reason") or CAPTURE_REASON_AUTO_72H,
            payment_intent_id=raw.get("payment_intent_id"),
        )
    if job_type is JobType.PAYMENT_EXPIRY:
        value = raw.get("expiry_type")
        try:
            expiry_type = ExpiryType(value) if value else None
        except ValueError:
            expiry_type = None
        return ExpiryData(expiry_type=expiry_type)
    if job_type is JobType.CONFIRMATION_REMINDER:
        return ConfirmationReminderData(
            hours_before_expiry=int(raw.get("hours_before_expiry", 2))
        )
    if job_type is JobType.PAYMENT_REMINDER:
        return PaymentReminderData(hours_before_capture=raw.get("hours_before_capture", 24))
    raise ValueError(f"unknown job type: {job_type!r}")


def encode_job_data(data: JobData) -> dict:
    if isinstance(data, CaptureData):
        return {
            "capture_reason": data.capture_reason,
            "payment_intent_id": data.payment_intent_id,
        }
    if isinstance(data, ExpiryData):
        return {"expiry_type": data.expiry_type.value if data.expiry_type else None}
    if isinstance(data, ConfirmationReminderData):
        return {
            "reminder_type": ReminderType.CONFIRMATION.value,
            "hours_before_expiry": data.hours_before_expiry,
        }
    if isinstance(data, PaymentReminderData):
        return {
            "reminder_type": ReminderType.PAYMENT.value,
            "hours_before_capture": data.hours_before_capture,
        }
    raise TypeError(f"unsupported job data: {data!r}")


def job_subtype(job_type: JobType, raw: dict | None) -> str | None:
    """Return the subtype tag that participates in pending-job dedup."""

    if job_type is JobType.PAYMENT_EXPIRY:
        data = decode_job_data(job_type, raw)
        if isinstance(data, ExpiryData) and data.expiry_type:
            return data.expiry_type.value
    return None


def dedup_key(authorization_id: int, job_type: JobType, subtype: str | None) -> str:
    return f"{authorization_id}:{job_type.value}:{subtype or '-'}"


def retry_delay(attempts: int, *, base_minutes: int = 5, cap_minutes: int = 60) -> timedelta:
    """Exponential backoff: 5, 10, 20, 40 then capped at 60 minutes."""

    return timedelta(minutes=min(cap_minutes, (2**attempts) * base_minutes))


@dataclass(slots=True)
class Participant:
    user_id: int
    email: str | None = None


@dataclass(slots=True)
class PaymentAuthorization:
    """Payment hold for a booking, owned by the payments subsystem."""

    id: int
    status: AuthorizationStatus
    amount_cents: int
    booking_id: int | None = None
    currency: str = "cad"
    payment_intent_id: str | None = None
    confirmation_deadline: datetime | None = None
    auto_capture_at: datetime | None = None
    expires_at: datetime | None = None
    sender: Participant | None = None
    transporter: Participant | None = None
    updated_at: datetime | None = None

    def is_pending(self) -> bool:
        return self.status is AuthorizationStatus.PENDING

    def is_confirmed(self) -> bool:
        return self.status is AuthorizationStatus.CONFIRMED

    def is_captured(self) -> bool:
        return self.status is AuthorizationStatus.CAPTURED

    def is_cancelled(self) -> bool:
        return self.status is AuthorizationStatus.CANCELLED

    def is_expired(self) -> bool:
        return self.status is AuthorizationStatus.EXPIRED

    def is_terminal(self) -> bool:
        return self.is_expired() or self.is_captured() or self.is_cancelled()

    def is_confirmation_expired(self, now: datetime) -> bool:
        return (
            self.is_pending()
            and self.confirmation_deadline is not None
            and self.confirmation_deadline < now
        )

    def is_capture_expired(self, now: datetime) -> bool:
        return self.is_confirmed() and self.expires_at is not None and self.expires_at < now

    def is_ready_for_auto_capture(self, now: datetime) -> bool:
        return (
            self.is_confirmed()
            and self.auto_capture_at is not None
            and self.auto_capture_at < now
        )

    def can_be_captured(self, now: datetime) -> bool:
        return self.is_confirmed() and not self.is_capture_expired(now)

    def remaining_confirmation_minutes(self, now: datetime) -> int | None:
        if not self.is_pending() or self.confirmation_deadline is None:
            return None
        return max(0, int((self.confirmation_deadline - now).total_seconds() // 60))


@dataclass(slots=True)
class ScheduledJob:
    """Persisted, time-triggered unit of work bound to one authorization.

    Status moves ``pending -> running -> completed | failed``; ``failed`` may
    return to ``pending`` through a retry while attempts remain, ``pending``
    may be ``cancelled``. ``completed`` and ``cancelled`` are terminal.
    """

    type: JobType
    payment_authorization_id: int
    scheduled_at: datetime
    booking_id: int | None = None
    id: UUID = field(default_factory=uuid4)
    status: JobStatus = JobStatus.PENDING
    priority: int = 100
    attempts: int = 0
    max_attempts: int = 3
    job_data: dict = field(default_factory=dict)
    result: dict | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    executed_at: datetime | None = None
    lease_until: datetime | None = None
    leased_by: UUID | None = None
    version: int = 0
    active_key: str | None = None

    @classmethod
    def for_authorization(
        cls,
        authorization: PaymentAuthorization,
        job_type: JobType,
        *,
        scheduled_at: datetime,
        data: JobData,
        priority: int,
        max_attempts: int = 3,
    ) -> "ScheduledJob":
        return cls(
            type=job_type,
            payment_authorization_id=authorization.id,
            booking_id=authorization.booking_id,
            scheduled_at=scheduled_at,
            priority=priority,
            max_attempts=max_attempts,
            job_data=encode_job_data(data),
        )

    @property
    def data(self) -> JobData:
        return decode_job_data(self.type, self.job_data)

    @property
    def subtype(self) -> str | None:
        return job_subtype(self.type, self.job_data)

    @property
    def dedup_key(self) -> str:
        return dedup_key(self.payment_authorization_id, self.type, self.subtype)

    @property
    def skipped(self) -> bool:
        return bool(self.result and self.result.get("skipped"))

    def is_pending(self) -> bool:
        return self.status is JobStatus.PENDING

    def is_failed(self) -> bool:
        return self.status is JobStatus.FAILED

    def can_retry(self) -> bool:
        return self.is_failed() and self.attempts < self.max_attempts

    def is_ready_to_execute(self, now: datetime) -> bool:
        return self.is_pending() and self.scheduled_at <= now

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data


class OutcomeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_CLAIMED = "not_claimed"


@dataclass(frozen=True, slots=True)
class JobOutcome:
    """Result of a single execution attempt.

    Truthy for ``succeeded`` and ``skipped``; a job that could not be claimed
    or that failed evaluates to ``False``.
    """

    status: OutcomeStatus
    job_id: UUID | None = None
    result: dict = field(default_factory=dict)
    error_kind: ErrorKind | None = None
    message: str | None = None

    def __bool__(self) -> bool:
        return self.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED)

    @classmethod
    def succeeded(cls, job_id: UUID | None, result: dict) -> "JobOutcome":
        return cls(OutcomeStatus.SUCCEEDED, job_id, result)

    @classmethod
    def skipped(cls, job_id: UUID | None, result: dict) -> "JobOutcome":
        return cls(OutcomeStatus.SKIPPED, job_id, {**result, "skipped": True})

    @classmethod
    def failed(
        cls,
        job_id: UUID | None,
        error_kind: ErrorKind,
        message: str,
        result: dict | None = None,
    ) -> "JobOutcome":
        return cls(OutcomeStatus.FAILED, job_id, result or {}, error_kind, message)

    @classmethod
    def not_claimed(cls, job_id: UUID | None) -> "JobOutcome":
        return cls(OutcomeStatus.NOT_CLAIMED, job_id)
