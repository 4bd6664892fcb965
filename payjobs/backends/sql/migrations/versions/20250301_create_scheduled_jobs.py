"""Create scheduled job and payment authorization tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20250301_create_scheduled_jobs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("payment_authorization_id", sa.Integer, nullable=False),
        sa.Column("booking_id", sa.Integer),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("job_data", sa.JSON, nullable=False),
        sa.Column("result", sa.JSON),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
        sa.Column("lease_until", sa.DateTime(timezone=True)),
        sa.Column("leased_by", sa.String(36)),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active_key", sa.String(255), unique=True),
        sa.CheckConstraint(
            "status IN ('pending','running','completed','failed','cancelled')",
            name="scheduled_job_status_chk",
        ),
        sa.CheckConstraint(
            "type IN ('auto_capture','payment_expiry','confirmation_reminder','payment_reminder')",
            name="scheduled_job_type_chk",
        ),
    )
    op.create_index(
        "idx_scheduled_jobs_ready",
        "scheduled_jobs",
        ["status", "type", "scheduled_at", "priority"],
    )
    op.create_index(
        "idx_scheduled_jobs_authorization",
        "scheduled_jobs",
        ["payment_authorization_id", "status"],
    )
    op.create_table(
        "payment_authorizations",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("booking_id", sa.Integer),
        sa.Column("payment_intent_id", sa.Text),
        sa.Column("amount_cents", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="cad"),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("confirmation_deadline", sa.DateTime(timezone=True)),
        sa.Column("auto_capture_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("sender_id", sa.Integer),
        sa.Column("sender_email", sa.Text),
        sa.Column("transporter_id", sa.Integer),
        sa.Column("transporter_email", sa.Text),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "idx_payment_authorizations_status",
        "payment_authorizations",
        ["status"],
    )


def downgrade() -> None:
    op.drop_index("idx_payment_authorizations_status", table_name="payment_authorizations")
    op.drop_table("payment_authorizations")
    op.drop_index("idx_scheduled_jobs_authorization", table_name="scheduled_jobs")
    op.drop_index("idx_scheduled_jobs_ready", table_name="scheduled_jobs")
    op.drop_table("scheduled_jobs")
