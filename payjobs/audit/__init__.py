"""Audit sink implementations."""

from .local import FanoutAuditSink
from .memory import MemoryAuditSink

__all__ = ["FanoutAuditSink", "MemoryAuditSink"]
