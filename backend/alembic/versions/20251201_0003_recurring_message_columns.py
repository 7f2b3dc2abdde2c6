"""Add recurrence columns to messaging_messages."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20251201_0003"
down_revision = "20251201_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("messaging_messages") as batch_op:
        batch_op.add_column(sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()))
        batch_op.add_column(sa.Column("recurrence_frequency", sa.String(length=16), nullable=True))
        batch_op.add_column(sa.Column("recurrence_end_date", sa.Date(), nullable=True))
    op.create_index(
        "ix_messaging_messages_recurring",
        "messaging_messages",
        ["is_recurring", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_messaging_messages_recurring", table_name="messaging_messages")
    with op.batch_alter_table("messaging_messages") as batch_op:
        batch_op.drop_column("recurrence_end_date")
        batch_op.drop_column("recurrence_frequency")
        batch_op.drop_column("is_recurring")
