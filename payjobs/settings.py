"""Tunables shared by the executors and the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True, slots=True)
class SchedulerSettings:
    """Configuration for batch sizes, thresholds and collaborator timeouts.

    Parameters:
        capture_batch_size: Auto-capture jobs handled per batch call.
        expiry_batch_size: Expiry jobs handled per batch call.
        reminder_batch_size: Reminder jobs (both kinds) handled per batch call.
        overdue_grace: Age past ``scheduled_at`` after which a pending job
            counts as overdue in queue status.
        stuck_after: Time a job may stay ``running`` before the validation
            sweep force-fails it.
        capture_overdue_after: Lateness after which capture validation
            brings a pending job forward or cancels it.
        expiry_overdue_after: Lateness after which expiry validation runs a
            pending job inline.
        reminder_overdue_after: Lateness after which an irrelevant pending
            reminder is cancelled by validation.
        confirmation_reminder_lead: How long before the confirmation deadline
            the sender is reminded.
        payment_reminder_lead: How long before auto-capture both parties are
            reminded.
        retry_base_minutes: Base of the exponential retry backoff.
        retry_cap_minutes: Upper bound of the retry backoff.
        max_attempts: Attempts allotted to newly scheduled jobs.
        gateway_timeout_s: Time limit for a single capture/expire call.
        notification_timeout_s: Time limit for a single notification send.
        lease_ttl_s: How long a batch keeps selected rows to itself.
        retention_days: Default age of terminal rows removed by cleanup.
        statistics_days: Window used by per-executor statistics.
        upcoming_limit: Number of upcoming jobs listed in queue status.
        frontend_url: Base URL used to build confirmation links.
    """

    capture_batch_size: int = 50
    expiry_batch_size: int = 100
    reminder_batch_size: int = 50
    overdue_grace: timedelta = timedelta(minutes=5)
    stuck_after: timedelta = timedelta(minutes=30)
    capture_overdue_after: timedelta = timedelta(hours=1)
    expiry_overdue_after: timedelta = timedelta(minutes=10)
    reminder_overdue_after: timedelta = timedelta(hours=1)
    confirmation_reminder_lead: timedelta = timedelta(hours=2)
    payment_reminder_lead: timedelta = timedelta(hours=24)
    retry_base_minutes: int = 5
    retry_cap_minutes: int = 60
    max_attempts: int = 3
    gateway_timeout_s: float = 30.0
    notification_timeout_s: float = 15.0
    lease_ttl_s: int = 300
    retention_days: int = 30
    statistics_days: int = 7
    upcoming_limit: int = 5
    frontend_url: str = "http://localhost:3000"

    def __post_init__(self) -> None:
        for name in (
            "capture_batch_size",
            "expiry_batch_size",
            "reminder_batch_size",
            "retry_base_minutes",
            "retry_cap_minutes",
            "max_attempts",
            "lease_ttl_s",
            "retention_days",
            "statistics_days",
            "upcoming_limit",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than 0")
        for name in ("gateway_timeout_s", "notification_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than 0")
        for name in (
            "overdue_grace",
            "stuck_after",
            "capture_overdue_after",
            "expiry_overdue_after",
            "reminder_overdue_after",
            "confirmation_reminder_lead",
            "payment_reminder_lead",
        ):
            if getattr(self, name) < timedelta(0):
                raise ValueError(f"{name} must not be negative")
        if self.retry_cap_minutes < self.retry_base_minutes:
            raise ValueError("retry_cap_minutes must be at least retry_base_minutes")
        if not self.frontend_url:
            raise ValueError("frontend_url must not be empty")
