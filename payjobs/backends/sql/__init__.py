"""SQL store helpers."""

from .backend import SQLAuthorizationStore, SQLJobStore
from .schema import PaymentAuthorizations, ScheduledJobs, metadata

__all__ = [
    "SQLAuthorizationStore",
    "SQLJobStore",
    "PaymentAuthorizations",
    "ScheduledJobs",
    "metadata",
]
