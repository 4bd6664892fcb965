"""Store implementations."""

from .memory import MemoryAuthorizationStore, MemoryJobStore
from .sql.backend import SQLAuthorizationStore, SQLJobStore

__all__ = [
    "MemoryAuthorizationStore",
    "MemoryJobStore",
    "SQLAuthorizationStore",
    "SQLJobStore",
]
