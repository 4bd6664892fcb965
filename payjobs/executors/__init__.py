"""Job executors, one per family of scheduled jobs."""

from .base import CollaboratorError, JobExecutor
from .capture import CaptureExecutor
from .expiry import ExpiryExecutor
from .reminder import ReminderExecutor

__all__ = [
    "CaptureExecutor",
    "CollaboratorError",
    "ExpiryExecutor",
    "JobExecutor",
    "ReminderExecutor",
]
