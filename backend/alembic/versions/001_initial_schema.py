"""Initial schema - users, mailboxes, pipeline bookkeeping.

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19

Creates every table of the mail client. Bodies and attachment data use
LONGTEXT/LONGBLOB on MySQL.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LongText = sa.Text().with_variant(mysql.LONGTEXT(), "mysql")
LongBinary = sa.LargeBinary().with_variant(mysql.LONGBLOB(), "mysql")


def _timestamps(updated: bool = True):
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True)))
    return columns


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("username", sa.String(100), nullable=False),
        sa.Column("hashed_password", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
        sa.Column("last_login", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255)),
        sa.Column("signature", sa.Text()),
        sa.Column("reply_to", sa.String(255)),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("page_size", sa.Integer(), nullable=False),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False),
        sa.Column("theme", sa.String(20), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_user_settings_id", "user_settings", ["id"])

    op.create_table(
        "email_threads",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subject", sa.String(1000)),
        sa.Column("message_count", sa.Integer(), nullable=False),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=False),
    )
    op.create_index("ix_email_threads_id", "email_threads", ["id"])
    op.create_index("ix_email_threads_user_id", "email_threads", ["user_id"])
    op.create_index("ix_email_threads_last_message_at", "email_threads", ["last_message_at"])
    op.create_index("idx_threads_user_subject", "email_threads", ["user_id", "subject"],
                    mysql_length={"subject": 191})

    op.create_table(
        "emails",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("thread_id", sa.Integer(), sa.ForeignKey("email_threads.id", ondelete="SET NULL")),
        sa.Column("message_id", sa.String(255), nullable=False),
        sa.Column("in_reply_to", sa.String(255)),
        sa.Column("references_header", sa.Text()),
        sa.Column("folder", sa.String(20), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("sender", sa.String(500)),
        sa.Column("subject", sa.String(1000)),
        sa.Column("body_plain", LongText),
        sa.Column("body_html", LongText),
        sa.Column("size", sa.Integer()),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("is_starred", sa.Boolean(), nullable=False),
        sa.Column("is_important", sa.Boolean(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("received_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "message_id", name="uq_emails_user_message_id"),
    )
    op.create_index("ix_emails_id", "emails", ["id"])
    op.create_index("ix_emails_user_id", "emails", ["user_id"])
    op.create_index("ix_emails_thread_id", "emails", ["thread_id"])
    op.create_index("ix_emails_folder", "emails", ["folder"])
    op.create_index("ix_emails_status", "emails", ["status"])
    op.create_index("ix_emails_sender", "emails", ["sender"])
    op.create_index("ix_emails_received_at", "emails", ["received_at"])
    op.create_index("idx_emails_user_folder", "emails", ["user_id", "folder", "created_at"])
    op.create_index("idx_emails_user_thread", "emails", ["user_id", "thread_id"])

    op.create_table(
        "email_recipients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("address", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("recipient_type", sa.String(3), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL")),
        sa.Column("delivery_status", sa.String(20), nullable=False),
        sa.Column("smtp_code", sa.Integer()),
        sa.Column("smtp_message", sa.Text()),
        sa.Column("attempted_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_email_recipients_id", "email_recipients", ["id"])
    op.create_index("ix_email_recipients_email_id", "email_recipients", ["email_id"])
    op.create_index("ix_email_recipients_address", "email_recipients", ["address"])

    op.create_table(
        "email_attachments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.String(500)),
        sa.Column("content_type", sa.String(200)),
        sa.Column("size", sa.Integer()),
        sa.Column("content_id", sa.String(255)),
        sa.Column("is_inline", sa.Boolean(), nullable=False),
        sa.Column("file_data", LongBinary),
        sa.Column("checksum", sa.String(64)),
        *_timestamps(updated=False),
    )
    op.create_index("ix_email_attachments_id", "email_attachments", ["id"])
    op.create_index("idx_attachments_email_id", "email_attachments", ["email_id"])
    op.create_index("idx_attachments_checksum", "email_attachments", ["checksum"])

    op.create_table(
        "email_labels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("color", sa.String(20)),
        *_timestamps(updated=False),
        sa.UniqueConstraint("user_id", "name", name="uq_email_labels_user_name"),
    )
    op.create_index("ix_email_labels_id", "email_labels", ["id"])
    op.create_index("ix_email_labels_user_id", "email_labels", ["user_id"])

    op.create_table(
        "email_label_assignments",
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("label_id", sa.Integer(), sa.ForeignKey("email_labels.id", ondelete="CASCADE"), primary_key=True),
    )

    op.create_table(
        "email_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("subject", sa.String(1000), nullable=False),
        sa.Column("body_plain", sa.Text()),
        sa.Column("body_html", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_email_templates_user_name"),
    )
    op.create_index("ix_email_templates_id", "email_templates", ["id"])
    op.create_index("ix_email_templates_user_id", "email_templates", ["user_id"])

    op.create_table(
        "email_schedules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True)),
        *_timestamps(updated=False),
    )
    op.create_index("ix_email_schedules_id", "email_schedules", ["id"])
    op.create_index("ix_email_schedules_email_id", "email_schedules", ["email_id"])
    op.create_index("ix_email_schedules_scheduled_at", "email_schedules", ["scheduled_at"])
    op.create_index("ix_email_schedules_status", "email_schedules", ["status"])

    op.create_table(
        "email_analytics",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="SET NULL")),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("detail", sa.JSON()),
        *_timestamps(updated=False),
    )
    op.create_index("ix_email_analytics_id", "email_analytics", ["id"])
    op.create_index("ix_email_analytics_user_id", "email_analytics", ["user_id"])
    op.create_index("ix_email_analytics_email_id", "email_analytics", ["email_id"])
    op.create_index("ix_email_analytics_event_type", "email_analytics", ["event_type"])
    op.create_index("ix_email_analytics_created_at", "email_analytics", ["created_at"])
    op.create_index("idx_analytics_user_event_time", "email_analytics", ["user_id", "event_type", "created_at"])


def downgrade() -> None:
    for table in (
        "email_analytics", "email_schedules", "email_templates", "email_label_assignments",
        "email_labels", "email_attachments", "email_recipients", "emails", "email_threads",
        "user_settings", "users",
    ):
        op.drop_table(table)
