"""Create the organization, member, and messaging tables read by the reminder jobs."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20251201_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("event_time", sa.String(length=32), nullable=True),
        sa.Column("location", sa.String(length=256), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("recurrence_frequency", sa.String(length=16), nullable=True),
        sa.Column("reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reminder_send_time", sa.String(length=16), nullable=True),
        sa.Column("reminder_recipient_type", sa.String(length=32), nullable=True),
        sa.Column("reminder_recipient_ids_json", sa.Text(), nullable=True),
        sa.Column("reminder_template_id", sa.String(length=64), nullable=True),
        sa.Column("reminder_message_text", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_events_organization_id", "events", ["organization_id"], unique=False)

    op.create_table(
        "members",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("phone_number", sa.String(length=64), nullable=True),
        sa.Column("membership_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("groups_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_members_organization_id", "members", ["organization_id"], unique=False)

    op.create_table(
        "groups",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Active"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_groups_organization_id", "groups", ["organization_id"], unique=False)

    op.create_table(
        "messaging_api_configurations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("api_key", sa.String(length=256), nullable=False),
        sa.Column("username", sa.String(length=256), nullable=True),
        sa.Column("sender_id", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_messaging_api_configurations_organization_id",
        "messaging_api_configurations",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "messaging_templates",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messaging_templates_organization_id", "messaging_templates", ["organization_id"], unique=False)

    op.create_table(
        "notification_settings",
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("birthday_messages_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("birthday_template_id", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("organization_id"),
    )

    op.create_table(
        "messaging_messages",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("organization_id", sa.String(length=64), nullable=False),
        sa.Column("message_name", sa.String(length=512), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("recipient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("template_id", sa.String(length=64), nullable=True),
        sa.Column("api_configuration_id", sa.String(length=64), nullable=True),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messaging_messages_organization_id", "messaging_messages", ["organization_id"], unique=False)

    op.create_table(
        "messaging_message_recipients",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False, server_default="member"),
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("phone_number", sa.String(length=64), nullable=False),
        sa.Column("recipient_name", sa.String(length=256), nullable=False),
        sa.Column("personalized_message", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["messaging_messages.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_messaging_message_recipients_message_id",
        "messaging_message_recipients",
        ["message_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_messaging_message_recipients_message_id", table_name="messaging_message_recipients")
    op.drop_table("messaging_message_recipients")
    op.drop_index("ix_messaging_messages_organization_id", table_name="messaging_messages")
    op.drop_table("messaging_messages")
    op.drop_table("notification_settings")
    op.drop_index("ix_messaging_templates_organization_id", table_name="messaging_templates")
    op.drop_table("messaging_templates")
    op.drop_index("ix_messaging_api_configurations_organization_id", table_name="messaging_api_configurations")
    op.drop_table("messaging_api_configurations")
    op.drop_index("ix_groups_organization_id", table_name="groups")
    op.drop_table("groups")
    op.drop_index("ix_members_organization_id", table_name="members")
    op.drop_table("members")
    op.drop_index("ix_events_organization_id", table_name="events")
    op.drop_table("events")
