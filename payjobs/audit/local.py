"""Fan-out audit sink forwarding events to in-process subscribers."""

from __future__ import annotations

import asyncio
from collections import defaultdict
import logging
from typing import Awaitable, Callable, DefaultDict, List

from ..contracts import AuditEvent, AuditEventType, AuditSink

Handler = Callable[[AuditEvent], Awaitable[None]]
logger = logging.getLogger(__name__)


class FanoutAuditSink(AuditSink):
    """Fire-and-forget sink; a failing subscriber never affects the others."""

    def __init__(self) -> None:
        self._subs: DefaultDict[AuditEventType | None, List[Handler]] = defaultdict(list)

    def subscribe(self, handler: Handler, *, event_type: AuditEventType | None = None) -> None:
        """Register ``handler`` for one event type, or for all when ``None``."""

        self._subs[event_type].append(handler)

    async def record(self, event: AuditEvent) -> None:  # type: ignore[override]
        handlers = [*self._subs.get(None, ()), *self._subs.get(event.event_type, ())]
        results = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "audit handler failed: event_type=%s authorization_id=%s",
                    event.event_type.value,
                    event.payment_authorization_id,
                    exc_info=result,
                )
