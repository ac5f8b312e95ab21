"""create chat tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


MEDIA_KIND = sa.Enum("image", "video", name="media_kind")
CHANGE_ENTITY = sa.Enum("user", "message", name="change_entity")
CHANGE_OP = sa.Enum("upsert", "delete", name="change_op")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("username", sa.String(length=20), nullable=False),
        sa.Column("username_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_seen", sa.DateTime(), nullable=False),
        sa.Column("suspended_until", sa.DateTime(), nullable=True),
        sa.Column("suspension_reporters", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        mysql_charset="utf8mb4",
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("author_id", sa.String(length=32), nullable=True),
        sa.Column("author_username", sa.String(length=20), nullable=False),
        sa.Column("recipient_id", sa.String(length=32), nullable=True),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("media_kind", MEDIA_KIND, nullable=True),
        sa.Column("media_url", sa.String(length=1024), nullable=True),
        sa.Column("reply_to_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("edited_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["author_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reply_to_id"], ["messages.id"], ondelete="SET NULL"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_messages_created_at", "messages", ["created_at", "id"])
    op.create_index("ix_messages_recipient_created_at", "messages", ["recipient_id", "created_at"])

    op.create_table(
        "message_reactions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("emoji", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_reactions_message", "message_reactions", ["message_id"])

    op.create_table(
        "message_receipts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=32), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("message_id", "user_id", name="uq_message_receipt"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_receipts_message", "message_receipts", ["message_id"])

    op.create_table(
        "user_reports",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("reporter_id", sa.String(length=32), nullable=False),
        sa.Column("target_id", sa.String(length=32), nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=True),
        sa.Column("suspended_until", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["reporter_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["message_id"], ["messages.id"], ondelete="SET NULL"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_user_reports_target", "user_reports", ["target_id", "created_at"])

    op.create_table(
        "change_sequences",
        sa.Column("entity", CHANGE_ENTITY, primary_key=True, nullable=False),
        sa.Column("last_sequence", sa.Integer(), nullable=False, server_default="0"),
        mysql_charset="utf8mb4",
    )
    op.bulk_insert(
        sa.table(
            "change_sequences",
            sa.column("entity", sa.String()),
            sa.column("last_sequence", sa.Integer()),
        ),
        [
            {"entity": "user", "last_sequence": 0},
            {"entity": "message", "last_sequence": 0},
        ],
    )

    op.create_table(
        "change_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("entity", CHANGE_ENTITY, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("op", CHANGE_OP, nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("entity", "sequence", name="uq_change_event_sequence"),
        mysql_charset="utf8mb4",
    )
    op.create_index("ix_change_events_entity_id", "change_events", ["entity", "entity_id"])

    op.create_table(
        "command_receipts",
        sa.Column("user_id", sa.String(length=32), primary_key=True, nullable=False),
        sa.Column("command_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("command", sa.String(length=32), nullable=False),
        sa.Column("message_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        mysql_charset="utf8mb4",
    )


def downgrade() -> None:
    op.drop_table("command_receipts")
    op.drop_index("ix_change_events_entity_id", table_name="change_events")
    op.drop_table("change_events")
    op.drop_table("change_sequences")
    op.drop_index("ix_user_reports_target", table_name="user_reports")
    op.drop_table("user_reports")
    op.drop_index("ix_receipts_message", table_name="message_receipts")
    op.drop_table("message_receipts")
    op.drop_index("ix_reactions_message", table_name="message_reactions")
    op.drop_table("message_reactions")
    op.drop_index("ix_messages_recipient_created_at", table_name="messages")
    op.drop_index("ix_messages_created_at", table_name="messages")
    op.drop_table("messages")
    op.drop_table("users")

    bind = op.get_bind()
    for enum in (CHANGE_OP, CHANGE_ENTITY, MEDIA_KIND):
        enum.drop(bind, checkfirst=True)
