"""Create WhatsApp message token and webhook receipt tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20260301_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "whatsapp_message_tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=255), nullable=False),
        sa.Column("participant_id", sa.String(length=64), nullable=False),
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("template_name", sa.String(length=100), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id"),
    )
    op.create_index(
        "ix_whatsapp_message_tokens_phone_number",
        "whatsapp_message_tokens",
        ["phone_number"],
        unique=False,
    )
    op.create_index(
        "ix_whatsapp_message_tokens_processed",
        "whatsapp_message_tokens",
        ["processed"],
        unique=False,
    )

    op.create_table(
        "whatsapp_webhook_receipts",
        sa.Column("message_id", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("message_id"),
    )


def downgrade() -> None:
    op.drop_table("whatsapp_webhook_receipts")
    op.drop_index("ix_whatsapp_message_tokens_processed", table_name="whatsapp_message_tokens")
    op.drop_index("ix_whatsapp_message_tokens_phone_number", table_name="whatsapp_message_tokens")
    op.drop_table("whatsapp_message_tokens")
