"""Create sent-log, dispatch-lock, and cron execution log tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20251201_0002"
down_revision = "20251201_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "event_reminder_sent_logs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("occurrence_date", sa.Date(), nullable=False),
        sa.Column("reminder_send_time", sa.String(length=16), nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=True),
        sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "event_id",
            "occurrence_date",
            "reminder_send_time",
            name="uq_event_reminder_sent_logs_occurrence",
        ),
    )
    op.create_index("ix_event_reminder_sent_logs_event_id", "event_reminder_sent_logs", ["event_id"], unique=False)

    op.create_table(
        "event_reminder_dispatch_locks",
        sa.Column("lock_key", sa.String(length=256), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("lock_key"),
    )

    op.create_table(
        "cron_job_execution_logs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("job_name", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("total_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_success", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details_json", sa.Text(), nullable=True),
        sa.Column("execution_details_json", sa.Text(), nullable=True),
        sa.Column("response_data_json", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cron_job_execution_logs_job_name", "cron_job_execution_logs", ["job_name"], unique=False)
    op.create_index("ix_cron_job_execution_logs_started_at", "cron_job_execution_logs", ["started_at"], unique=False)

    op.create_table(
        "cron_job_error_details",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("log_id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("code", sa.String(length=128), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["log_id"], ["cron_job_execution_logs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cron_job_error_details_log_id", "cron_job_error_details", ["log_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_cron_job_error_details_log_id", table_name="cron_job_error_details")
    op.drop_table("cron_job_error_details")
    op.drop_index("ix_cron_job_execution_logs_started_at", table_name="cron_job_execution_logs")
    op.drop_index("ix_cron_job_execution_logs_job_name", table_name="cron_job_execution_logs")
    op.drop_table("cron_job_execution_logs")
    op.drop_table("event_reminder_dispatch_locks")
    op.drop_index("ix_event_reminder_sent_logs_event_id", table_name="event_reminder_sent_logs")
    op.drop_table("event_reminder_sent_logs")
