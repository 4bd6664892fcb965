"""Payjobs: scheduled capture, expiry and reminder jobs for payment authorizations."""

from .clock import Clock, FixedClock, SystemClock
from .contracts import (
    AuditSink,
    AuthorizationStore,
    JobStore,
    NotificationService,
    PaymentGateway,
)
from .executors import CaptureExecutor, ExpiryExecutor, ReminderExecutor
from .models import JobOutcome, JobStatus, JobType, PaymentAuthorization, ScheduledJob
from .scheduler import JobScheduler
from .settings import SchedulerSettings

__version__ = "0.1.0"

__all__ = [
    "AuditSink",
    "AuthorizationStore",
    "CaptureExecutor",
    "Clock",
    "ExpiryExecutor",
    "FixedClock",
    "JobOutcome",
    "JobScheduler",
    "JobStatus",
    "JobStore",
    "JobType",
    "NotificationService",
    "PaymentAuthorization",
    "PaymentGateway",
    "ReminderExecutor",
    "ScheduledJob",
    "SchedulerSettings",
    "SystemClock",
    "__version__",
]
