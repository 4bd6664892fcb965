"""Entry-point for the ``payjobs`` console script."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from .backends.sql import SQLAuthorizationStore, SQLJobStore, metadata
from .clients import HttpNotificationService, HttpPaymentGateway
from .contracts import NotificationService, PaymentGateway
from .scheduler import JobScheduler
from .settings import SchedulerSettings

_NEEDS_GATEWAY = {"process", "validate", "expire-sweep"}
_NEEDS_NOTIFIER = {"process"}


class CLIError(RuntimeError):
    """Raised when the CLI fails to start or configure the scheduler."""


class _Unconfigured(PaymentGateway, NotificationService):
    """Placeholder for collaborators the selected command never calls."""

    def __init__(self, option: str) -> None:
        self.option = option

    def _missing(self) -> CLIError:
        return CLIError(f"{self.option} is required for this command")

    async def capture(self, authorization, reason):
        raise self._missing()

    async def expire(self, authorization):
        raise self._missing()

    async def send_confirmation_reminder(self, user, context):
        raise self._missing()

    async def send_capture_reminder(self, user, context, role):
        raise self._missing()


def _positive_int(name: str) -> Callable[[str], int]:
    def _validate(value: str) -> int:
        try:
            converted = int(value)
        except ValueError as exc:  # pragma: no cover - argparse already reports
            raise argparse.ArgumentTypeError(f"{name} must be an integer") from exc
        if converted <= 0:
            raise argparse.ArgumentTypeError(f"{name} must be greater than 0")
        return converted

    return _validate


def _configure_logging(level_name: str) -> None:
    numeric = logging.getLevelName(level_name.upper())
    if not isinstance(numeric, int):  # pragma: no cover - guarded by argparse choices
        raise CLIError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=numeric, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _load_factory(dotted_path: str) -> Any:
    module_name, sep, attr = dotted_path.rpartition(":")
    if not module_name or not sep:
        raise CLIError("Factory path must be in 'module:attr' format")
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise CLIError(f"Cannot import module '{module_name}': {exc}") from exc
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise CLIError(f"Module '{module_name}' has no attribute '{attr}'") from exc
    try:
        return factory()
    except Exception as exc:
        raise CLIError(f"Factory '{dotted_path}' raised: {exc}") from exc


def _build_gateway(args: argparse.Namespace) -> PaymentGateway:
    if args.gateway:
        gateway = _load_factory(args.gateway)
        if not isinstance(gateway, PaymentGateway):
            raise CLIError(f"'{args.gateway}' did not return a PaymentGateway")
        return gateway
    if args.gateway_url:
        return HttpPaymentGateway(args.gateway_url, timeout=args.gateway_timeout)
    if args.command in _NEEDS_GATEWAY:
        raise CLIError("--gateway-url or --gateway is required for this command")
    return _Unconfigured("--gateway-url or --gateway")


def _build_notifier(args: argparse.Namespace) -> NotificationService:
    if args.notifier:
        notifier = _load_factory(args.notifier)
        if not isinstance(notifier, NotificationService):
            raise CLIError(f"'{args.notifier}' did not return a NotificationService")
        return notifier
    if args.notifier_url:
        return HttpNotificationService(args.notifier_url, timeout=args.notification_timeout)
    if args.command in _NEEDS_NOTIFIER:
        raise CLIError("--notifier-url or --notifier is required for this command")
    return _Unconfigured("--notifier-url or --notifier")


def _build_settings(args: argparse.Namespace) -> SchedulerSettings:
    try:
        return SchedulerSettings(
            capture_batch_size=args.capture_batch,
            expiry_batch_size=args.expiry_batch,
            reminder_batch_size=args.reminder_batch,
            lease_ttl_s=args.lease_ttl,
            gateway_timeout_s=args.gateway_timeout,
            notification_timeout_s=args.notification_timeout,
            frontend_url=args.frontend_url,
        )
    except ValueError as exc:
        raise CLIError(f"Invalid configuration: {exc}") from exc


async def _dispatch(scheduler: JobScheduler, args: argparse.Namespace) -> Any:
    command = args.command
    if command == "process":
        return await scheduler.process_all_jobs()
    if command == "retry":
        return await scheduler.retry_failed_jobs()
    if command == "validate":
        return await scheduler.validate_all_jobs()
    if command == "status":
        return await scheduler.get_queue_status()
    if command == "stats":
        return await scheduler.get_system_statistics()
    if command == "cleanup":
        return await scheduler.cleanup_all_old_jobs(args.days)
    if command == "expire-sweep":
        return await scheduler.expiry.process_expired_authorizations()

    authorization = await scheduler.authorizations.get(args.authorization_id)
    if authorization is None:
        raise CLIError(f"Payment authorization {args.authorization_id} not found")
    if command == "schedule":
        jobs = await scheduler.schedule_all_jobs_for_authorization(authorization)
        return [job.to_dict() for job in jobs]
    if command == "cancel":
        cancelled = await scheduler.cancel_all_jobs_for_authorization(authorization, args.reason)
        return {"cancelled": cancelled}
    raise CLIError(f"Unknown command: {command}")  # pragma: no cover - argparse choices


async def _run_command(args: argparse.Namespace) -> Any:
    _configure_logging(args.log_level)
    settings = _build_settings(args)
    gateway = _build_gateway(args)
    notifier = _build_notifier(args)
    try:
        engine = create_async_engine(args.dsn)
    except SQLAlchemyError as exc:
        raise CLIError(f"Failed to create engine for DSN {args.dsn!r}: {exc}") from exc

    try:
        if args.create_schema:
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        jobs = SQLJobStore(engine, prefer_pg_skip_locked=not args.disable_skip_locked)
        authorizations = SQLAuthorizationStore(engine)
        scheduler = JobScheduler.from_stores(
            jobs,
            authorizations,
            gateway=gateway,
            notifier=notifier,
            settings=settings,
        )
        try:
            await jobs.check_connection()
            return await _dispatch(scheduler, args)
        except SQLAlchemyError as exc:
            raise CLIError(f"Store unavailable: {exc}") from exc
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run payment authorization jobs")
    parser.add_argument("--dsn", required=True, help="SQLAlchemy async DSN")
    gateway = parser.add_mutually_exclusive_group()
    gateway.add_argument("--gateway-url", help="Base URL of the payment gateway HTTP API")
    gateway.add_argument("--gateway", help="Gateway factory in the form 'module:attr'")
    notifier = parser.add_mutually_exclusive_group()
    notifier.add_argument("--notifier-url", help="Base URL of the notification HTTP API")
    notifier.add_argument("--notifier", help="Notifier factory in the form 'module:attr'")
    parser.add_argument("--capture-batch", type=_positive_int("capture-batch"), default=50)
    parser.add_argument("--expiry-batch", type=_positive_int("expiry-batch"), default=100)
    parser.add_argument("--reminder-batch", type=_positive_int("reminder-batch"), default=50)
    parser.add_argument("--lease-ttl", type=_positive_int("lease-ttl"), default=300)
    parser.add_argument("--gateway-timeout", type=float, default=30.0)
    parser.add_argument("--notification-timeout", type=float, default=15.0)
    parser.add_argument("--frontend-url", default="http://localhost:3000")
    parser.add_argument(
        "--disable-skip-locked",
        action="store_true",
        help="Disable Postgres SKIP LOCKED optimization",
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before running the command",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Root logging level",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("process", help="Run the capture, expiry and reminder batches")
    commands.add_parser("retry", help="Requeue retryable failed jobs with backoff")
    commands.add_parser("validate", help="Repair stuck, orphaned and missing jobs")
    commands.add_parser("status", help="Show queue status")
    commands.add_parser("stats", help="Show system statistics")
    cleanup = commands.add_parser("cleanup", help="Delete old completed and cancelled jobs")
    cleanup.add_argument("--days", type=_positive_int("days"), default=30)
    commands.add_parser("expire-sweep", help="Expire overdue authorizations directly")
    schedule = commands.add_parser("schedule", help="Plan every job for an authorization")
    schedule.add_argument("authorization_id", type=int)
    cancel = commands.add_parser("cancel", help="Cancel pending jobs for an authorization")
    cancel.add_argument("authorization_id", type=int)
    cancel.add_argument("--reason", default="authorization processed")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        output = asyncio.run(_run_command(args))
    except KeyboardInterrupt:  # pragma: no cover - CLI convenience
        print("Interrupted", file=sys.stderr)
        raise SystemExit(130)
    except CLIError as exc:
        print(f"payjobs: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except Exception as exc:  # pragma: no cover
        print(f"payjobs: unexpected failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    print(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":  # pragma: no cover
    main()
