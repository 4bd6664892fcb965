"""SQLAlchemy Core schema for scheduled jobs and payment authorizations."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.mysql import JSON as MYSQL_JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON

metadata = MetaData()

_JSON = (
    JSON().with_variant(JSONB, "postgresql")
    .with_variant(MYSQL_JSON, "mysql")
    .with_variant(SQLITE_JSON, "sqlite")
)

ScheduledJobs = Table(
    "scheduled_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("type", Text, nullable=False),
    Column("status", Text, nullable=False, server_default="pending"),
    Column("payment_authorization_id", Integer, nullable=False),
    Column("booking_id", Integer),
    Column("scheduled_at", DateTime(timezone=True), nullable=False),
    Column("priority", Integer, nullable=False, server_default="100"),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("max_attempts", Integer, nullable=False, server_default="3"),
    Column("job_data", _JSON, nullable=False),
    Column("result", _JSON),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.current_timestamp()),
    Column("started_at", DateTime(timezone=True)),
    Column("executed_at", DateTime(timezone=True)),
    Column("lease_until", DateTime(timezone=True)),
    Column("leased_by", String(36)),
    Column("version", Integer, nullable=False, server_default="0"),
    # Holds the dedup key while the job is pending and NULL otherwise, so the
    # unique constraint admits one pending job per key.
    Column("active_key", String(255), unique=True),
    CheckConstraint(
        "status IN ('pending','running','completed','failed','cancelled')",
        name="scheduled_job_status_chk",
    ),
    CheckConstraint(
        "type IN ('auto_capture','payment_expiry','confirmation_reminder','payment_reminder')",
        name="scheduled_job_type_chk",
    ),
)

Index(
    "idx_scheduled_jobs_ready",
    ScheduledJobs.c.status,
    ScheduledJobs.c.type,
    ScheduledJobs.c.scheduled_at,
    ScheduledJobs.c.priority,
)

Index(
    "idx_scheduled_jobs_authorization",
    ScheduledJobs.c.payment_authorization_id,
    ScheduledJobs.c.status,
)

PaymentAuthorizations = Table(
    "payment_authorizations",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("booking_id", Integer),
    Column("payment_intent_id", Text),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False, server_default="cad"),
    Column("status", Text, nullable=False),
    Column("confirmation_deadline", DateTime(timezone=True)),
    Column("auto_capture_at", DateTime(timezone=True)),
    Column("expires_at", DateTime(timezone=True)),
    Column("sender_id", Integer),
    Column("sender_email", Text),
    Column("transporter_id", Integer),
    Column("transporter_email", Text),
    Column("updated_at", DateTime(timezone=True)),
)

Index(
    "idx_payment_authorizations_status",
    PaymentAuthorizations.c.status,
)

__all__ = ["PaymentAuthorizations", "ScheduledJobs", "metadata"]
