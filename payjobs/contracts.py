"""Core contracts used by Payjobs components.

This module exposes explicit abstract base classes rather than ``typing.Protocol``
interfaces. Subclassing these contracts forces storage, gateway and
notification adapters to provide the full API at definition time instead of
relying solely on structural typing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Sequence
from uuid import UUID

from .models import (
    AuthorizationStatus,
    ErrorKind,
    JobStatus,
    JobType,
    Participant,
    PaymentAuthorization,
    ReminderType,
    ScheduledJob,
)


@dataclass(slots=True)
class JobQuery:
    """Filter used by :meth:`JobStore.query` and the counting helpers.

    Every populated attribute narrows the selection; ``None`` means "any".
    Bounds on ``scheduled_at`` are strict except ``scheduled_not_after``.
    """

    types: Sequence[JobType] | None = None
    statuses: Sequence[JobStatus] | None = None
    authorization_id: int | None = None
    scheduled_before: datetime | None = None
    scheduled_after: datetime | None = None
    scheduled_not_after: datetime | None = None
    created_since: datetime | None = None
    executed_since: datetime | None = None
    order_by_schedule: bool = False
    limit: int | None = None


class JobStore(ABC):
    """Persistence for :class:`ScheduledJob` rows.

    Every state transition is a conditional update: it applies only when the
    row is still in the expected source status and reports whether it did.
    """

    @abstractmethod
    async def create(self, job: ScheduledJob) -> tuple[ScheduledJob, bool]:
        """Insert ``job`` unless a pending job with the same dedup key exists.

        Returns the stored job and ``True`` when it was created, or the
        existing pending job and ``False``.
        """

    @abstractmethod
    async def get(self, job_id: UUID) -> ScheduledJob | None:
        """Return the job or ``None`` when it does not exist."""

    @abstractmethod
    async def find_pending(
        self, authorization_id: int, job_type: JobType, subtype: str | None = None
    ) -> ScheduledJob | None:
        """Return the pending job for the given dedup key, if any."""

    @abstractmethod
    async def claim_ready(
        self, job_types: Sequence[JobType], *, limit: int, owner: UUID, lease_ttl_s: int
    ) -> list[ScheduledJob]:
        """Lease up to ``limit`` ready jobs of ``job_types`` for ``owner``.

        Ready means pending with ``scheduled_at <= now`` and no live lease.
        Rows are ordered by priority then ``scheduled_at``.
        """

    @abstractmethod
    async def claim(self, job_id: UUID) -> ScheduledJob | None:
        """Atomically move ``job_id`` from pending to running.

        Returns the claimed job, or ``None`` if another caller won the race or
        the job is no longer pending.
        """

    @abstractmethod
    async def complete(self, job_id: UUID, result: dict) -> bool:
        """Move a running job to completed with ``result``."""

    @abstractmethod
    async def fail(self, job_id: UUID, message: str, result: dict | None = None) -> bool:
        """Move a running job to failed with ``message``."""

    @abstractmethod
    async def reschedule(
        self, job_id: UUID, scheduled_at: datetime, *, from_status: JobStatus
    ) -> bool:
        """Return a pending or failed job to pending at ``scheduled_at``.

        Returns ``False`` when the job left ``from_status`` or when another
        pending job already holds its dedup key.
        """

    @abstractmethod
    async def cancel(self, job_id: UUID, reason: str) -> bool:
        """Cancel a pending job."""

    @abstractmethod
    async def cancel_pending_for_authorization(self, authorization_id: int, reason: str) -> int:
        """Cancel every pending job of an authorization and return the count."""

    @abstractmethod
    async def fail_stuck(self, running_since: datetime, message: str) -> list[UUID]:
        """Fail running jobs untouched since ``running_since``."""

    @abstractmethod
    async def failed_retryable(self) -> list[ScheduledJob]:
        """Return failed jobs whose attempts are below ``max_attempts``."""

    @abstractmethod
    async def query(self, query: JobQuery) -> list[ScheduledJob]:
        """Return jobs matching ``query``."""

    @abstractmethod
    async def count(self, query: JobQuery) -> int:
        """Count jobs matching ``query``."""

    @abstractmethod
    async def count_by(self, query: JobQuery, column: str) -> dict[str, int]:
        """Group matching jobs by ``type`` or ``status`` and count them."""

    @abstractmethod
    async def authorization_ids_with_jobs(
        self, job_types: Sequence[JobType], statuses: Sequence[JobStatus]
    ) -> set[int]:
        """Return authorization ids owning at least one matching job."""

    @abstractmethod
    async def queue_stats(self) -> dict[str, int]:
        """Return pending/running/today/ready/retryable counters."""

    @abstractmethod
    async def delete_terminal(self, job_types: Sequence[JobType], older_than: datetime) -> int:
        """Delete completed or cancelled jobs last updated before ``older_than``."""

    @abstractmethod
    async def check_connection(self) -> None:
        """Raise if the store cannot be reached."""


class AuthorizationStore(ABC):
    """Read access to payment authorizations owned by the payments subsystem."""

    @abstractmethod
    async def get(self, authorization_id: int) -> PaymentAuthorization | None:
        """Return the authorization or ``None``."""

    @abstractmethod
    async def existing_ids(self, authorization_ids: Iterable[int]) -> set[int]:
        """Return the subset of ``authorization_ids`` that still exist."""

    @abstractmethod
    async def list_by_status(
        self, statuses: Sequence[AuthorizationStatus]
    ) -> list[PaymentAuthorization]:
        """Return authorizations in any of ``statuses``."""

    @abstractmethod
    async def expired(self, now: datetime) -> list[PaymentAuthorization]:
        """Pending authorizations whose confirmation deadline has passed."""

    @abstractmethod
    async def expired_confirmed(self, now: datetime) -> list[PaymentAuthorization]:
        """Confirmed authorizations whose capture deadline has passed."""

    async def confirmed(self) -> list[PaymentAuthorization]:
        return await self.list_by_status([AuthorizationStatus.CONFIRMED])

    async def active(self) -> list[PaymentAuthorization]:
        return await self.list_by_status(
            [AuthorizationStatus.PENDING, AuthorizationStatus.CONFIRMED]
        )


class PaymentGateway(ABC):
    """Payment provider operations on a held authorization."""

    @abstractmethod
    async def capture(self, authorization: PaymentAuthorization, reason: str) -> bool:
        """Charge the held funds; return ``True`` on success."""

    @abstractmethod
    async def expire(self, authorization: PaymentAuthorization) -> bool:
        """Release the hold and mark the authorization expired."""


@dataclass(slots=True)
class ReminderContext:
    """Template data handed to the notification service."""

    authorization: PaymentAuthorization
    reminder_type: ReminderType
    hours_remaining: float | None = None
    confirmation_url: str | None = None
    hours_until_capture: int | str | None = None
    capture_date: datetime | None = None


class NotificationService(ABC):
    """Delivery of payment reminders to marketplace users."""

    @abstractmethod
    async def send_confirmation_reminder(
        self, user: Participant, context: ReminderContext
    ) -> bool:
        """Remind the sender to confirm a pending authorization."""

    @abstractmethod
    async def send_capture_reminder(
        self, user: Participant, context: ReminderContext, role: str
    ) -> bool:
        """Warn ``user`` (``sender`` or ``transporter``) of an imminent capture."""


class AuditEventType(str, Enum):
    CAPTURE_SUCCEEDED = "capture_succeeded"
    CAPTURE_FAILED = "capture_failed"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    NOTIFICATION_SENT = "notification_sent"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    event_type: AuditEventType
    payment_authorization_id: int | None
    booking_id: int | None
    success: bool
    event_data: dict = field(default_factory=dict)
    error_message: str | None = None
    error_kind: ErrorKind | None = None
    recorded_at: datetime | None = None


class AuditSink(ABC):
    """Destination for payment audit events."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist ``event``; callers treat failures as non-fatal."""
