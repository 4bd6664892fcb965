"""Tests for the audit sinks."""

from __future__ import annotations

import asyncio

from payjobs.audit import FanoutAuditSink, MemoryAuditSink
from payjobs.contracts import AuditEvent, AuditEventType


def _event(event_type: AuditEventType, auth_id: int = 1) -> AuditEvent:
    return AuditEvent(
        event_type=event_type, payment_authorization_id=auth_id, booking_id=100 + auth_id, success=True
    )


def test_memory_sink_filters_and_evicts() -> None:
    async def _run() -> None:
        sink = MemoryAuditSink(max_items=2)
        await sink.record(_event(AuditEventType.CAPTURE_SUCCEEDED, 1))
        await sink.record(_event(AuditEventType.NOTIFICATION_SENT, 2))
        await sink.record(_event(AuditEventType.CAPTURE_FAILED, 2))

        assert [e.event_type for e in await sink.events()] == [
            AuditEventType.NOTIFICATION_SENT,
            AuditEventType.CAPTURE_FAILED,
        ]
        assert len(await sink.events(authorization_id=2)) == 2
        assert await sink.events(authorization_id=1) == []
        [failed] = await sink.events(event_type=AuditEventType.CAPTURE_FAILED)
        assert failed.payment_authorization_id == 2

    asyncio.run(_run())


def test_fanout_sink_isolates_failing_handlers(caplog) -> None:
    async def _run() -> None:
        sink = FanoutAuditSink()
        seen: list[str] = []

        async def everything(event: AuditEvent) -> None:
            seen.append(f"all:{event.event_type.value}")

        async def captures_only(event: AuditEvent) -> None:
            seen.append(f"capture:{event.event_type.value}")

        async def broken(event: AuditEvent) -> None:
            raise RuntimeError("subscriber down")

        sink.subscribe(everything)
        sink.subscribe(broken)
        sink.subscribe(captures_only, event_type=AuditEventType.CAPTURE_SUCCEEDED)

        await sink.record(_event(AuditEventType.CAPTURE_SUCCEEDED))
        await sink.record(_event(AuditEventType.AUTHORIZATION_EXPIRED))

        assert seen == [
            "all:capture_succeeded",
            "capture:capture_succeeded",
            "all:authorization_expired",
        ]

    with caplog.at_level("ERROR", logger="payjobs.audit.local"):
        asyncio.run(_run())
    assert sum("audit handler failed" in r.getMessage() for r in caplog.records) == 2
