"""Create notification job queue and appointment message log tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("appointment_id", sa.String(length=128), nullable=True),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_jobs_tenant_id", "notification_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_notification_jobs_appointment_id", "notification_jobs", ["appointment_id"], unique=False)
    op.create_index(
        "ix_notification_jobs_provider_message_id",
        "notification_jobs",
        ["provider_message_id"],
        unique=False,
    )
    op.create_index(
        "ix_notification_jobs_status_scheduled_for",
        "notification_jobs",
        ["status", "scheduled_for"],
        unique=False,
    )

    op.create_table(
        "appointment_message_log",
        sa.Column("entry_id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("appointment_id", sa.String(length=128), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=64), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index("ix_appointment_message_log_tenant_id", "appointment_message_log", ["tenant_id"], unique=False)
    op.create_index(
        "ix_appointment_message_log_appointment_id",
        "appointment_message_log",
        ["appointment_id"],
        unique=False,
    )
    op.create_index("ix_appointment_message_log_type", "appointment_message_log", ["type"], unique=False)
    op.create_index("ix_appointment_message_log_created_at", "appointment_message_log", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_appointment_message_log_created_at", table_name="appointment_message_log")
    op.drop_index("ix_appointment_message_log_type", table_name="appointment_message_log")
    op.drop_index("ix_appointment_message_log_appointment_id", table_name="appointment_message_log")
    op.drop_index("ix_appointment_message_log_tenant_id", table_name="appointment_message_log")
    op.drop_table("appointment_message_log")

    op.drop_index("ix_notification_jobs_status_scheduled_for", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_provider_message_id", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_appointment_id", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_tenant_id", table_name="notification_jobs")
    op.drop_table("notification_jobs")
