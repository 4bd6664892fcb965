"""Shared fakes and fixtures for the payjobs test-suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable

import pytest

from payjobs.audit import MemoryAuditSink
from payjobs.backends import MemoryAuthorizationStore, MemoryJobStore
from payjobs.clock import UTC, FixedClock
from payjobs.contracts import NotificationService, PaymentGateway, ReminderContext
from payjobs.executors import CaptureExecutor, ExpiryExecutor, ReminderExecutor
from payjobs.models import AuthorizationStatus, Participant, PaymentAuthorization
from payjobs.scheduler import JobScheduler
from payjobs.settings import SchedulerSettings

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


class FakeGateway(PaymentGateway):
    """Records calls; ``capture_result``/``expire_result`` may be a bool or an exception."""

    def __init__(self) -> None:
        self.captured: list[tuple[int, str]] = []
        self.expired: list[int] = []
        self.capture_result: Any = True
        self.expire_result: Any = True
        self.delay: float = 0.0
        self.authorizations: MemoryAuthorizationStore | None = None

    async def _answer(self, result: Any) -> bool:
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(result, BaseException):
            raise result
        return result

    async def capture(self, authorization: PaymentAuthorization, reason: str) -> bool:
        self.captured.append((authorization.id, reason))
        ok = await self._answer(self.capture_result)
        if ok and self.authorizations is not None:
            authorization.status = AuthorizationStatus.CAPTURED
            await self.authorizations.put(authorization)
        return ok

    async def expire(self, authorization: PaymentAuthorization) -> bool:
        self.expired.append(authorization.id)
        ok = await self._answer(self.expire_result)
        if ok and self.authorizations is not None:
            authorization.status = AuthorizationStatus.EXPIRED
            await self.authorizations.put(authorization)
        return ok


class FakeNotifier(NotificationService):
    """Records sends; ``fail_roles`` lists roles whose capture reminder fails."""

    def __init__(self) -> None:
        self.confirmations: list[tuple[int, ReminderContext]] = []
        self.captures: list[tuple[int, str, ReminderContext]] = []
        self.confirmation_result: Any = True
        self.fail_roles: set[str] = set()

    async def send_confirmation_reminder(self, user: Participant, context: ReminderContext) -> bool:
        self.confirmations.append((user.user_id, context))
        if isinstance(self.confirmation_result, BaseException):
            raise self.confirmation_result
        return self.confirmation_result

    async def send_capture_reminder(
        self, user: Participant, context: ReminderContext, role: str
    ) -> bool:
        self.captures.append((user.user_id, role, context))
        return role not in self.fail_roles


class Harness:
    def __init__(self, settings: SchedulerSettings | None = None) -> None:
        self.clock = FixedClock(NOW)
        self.settings = settings or SchedulerSettings()
        self.jobs = MemoryJobStore(clock=self.clock)
        self.authorizations = MemoryAuthorizationStore()
        self.gateway = FakeGateway()
        self.gateway.authorizations = self.authorizations
        self.notifier = FakeNotifier()
        self.audit = MemoryAuditSink()
        common: dict[str, Any] = dict(
            jobs=self.jobs,
            authorizations=self.authorizations,
            audit=self.audit,
            clock=self.clock,
            settings=self.settings,
        )
        self.capture = CaptureExecutor(gateway=self.gateway, **common)
        self.expiry = ExpiryExecutor(gateway=self.gateway, **common)
        self.reminder = ReminderExecutor(notifier=self.notifier, **common)
        self.scheduler = JobScheduler(
            self.capture, self.expiry, self.reminder, clock=self.clock, settings=self.settings
        )

    @property
    def now(self) -> datetime:
        return self.clock.now()

    async def add(self, authorization: PaymentAuthorization) -> PaymentAuthorization:
        await self.authorizations.put(authorization)
        return authorization


def make_authorization(
    auth_id: int = 1,
    status: AuthorizationStatus = AuthorizationStatus.CONFIRMED,
    *,
    now: datetime = NOW,
    **overrides: Any,
) -> PaymentAuthorization:
    values: dict[str, Any] = dict(
        id=auth_id,
        status=status,
        amount_cents=2500,
        booking_id=100 + auth_id,
        payment_intent_id=f"pi_{auth_id}",
        sender=Participant(10, "sender@example.com"),
        transporter=Participant(20, "driver@example.com"),
    )
    if status is AuthorizationStatus.PENDING:
        values["confirmation_deadline"] = now + timedelta(hours=4)
    if status is AuthorizationStatus.CONFIRMED:
        values["auto_capture_at"] = now + timedelta(hours=72)
        values["expires_at"] = now + timedelta(days=7)
    values.update(overrides)
    return PaymentAuthorization(**values)


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    return Harness
