"""In-process audit sink useful for tests and demos."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List

from ..contracts import AuditEvent, AuditEventType, AuditSink


class MemoryAuditSink(AuditSink):
    """Bounded audit trail kept in memory, oldest events evicted first."""

    def __init__(self, *, max_items: int = 1000) -> None:
        self._events: Deque[AuditEvent] = deque(maxlen=max_items)
        self._lock = asyncio.Lock()

    async def record(self, event: AuditEvent) -> None:  # type: ignore[override]
        async with self._lock:
            self._events.append(event)

    async def events(
        self,
        *,
        authorization_id: int | None = None,
        event_type: AuditEventType | None = None,
    ) -> List[AuditEvent]:
        async with self._lock:
            return [
                event
                for event in self._events
                if (authorization_id is None or event.payment_authorization_id == authorization_id)
                and (event_type is None or event.event_type is event_type)
            ]
