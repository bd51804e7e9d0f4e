"""Initial schema - users, device tokens, referrals and the notification engine tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # App users
    op.create_table(
        "app_users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255)),
        sa.Column("plan", sa.String(30), nullable=False, server_default="free"),
        sa.Column("country", sa.String(2)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("push_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("marketing_opt_in", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("reminder_opt_in", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("transaction_opt_in", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_app_users_plan", "app_users", ["plan"])
    op.create_index("ix_app_users_country", "app_users", ["country"])
    op.create_index("ix_app_users_subscription_expires_at", "app_users", ["subscription_expires_at"])

    # Device tokens
    op.create_table(
        "device_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("app_users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column("platform", sa.String(20)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_device_tokens_user_active", "device_tokens", ["user_id", "is_active"])

    # Referrals
    op.create_table(
        "referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("referrer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("referred_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("app_users.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("invited_notified_at", sa.DateTime(timezone=True)),
        sa.Column("verified_notified_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])
    op.create_index("ix_referrals_created_at", "referrals", ["created_at"])

    # Campaigns
    op.create_table(
        "notification_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("campaign_type", sa.String(30), nullable=False, server_default="marketing"),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("image_url", sa.String(500)),
        sa.Column("data", postgresql.JSONB, server_default="{}"),
        sa.Column("filters", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("error_message", sa.Text),
        sa.Column("target_users_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("delivered_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("opened_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clicked_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("created_by", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notification_campaigns_status", "notification_campaigns", ["status"])
    op.create_index(
        "ix_notification_campaigns_status_scheduled_for",
        "notification_campaigns", ["status", "scheduled_for"],
    )

    # Triggers
    op.create_table(
        "notification_triggers",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("settings", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        sa.Column("last_run_summary", postgresql.JSONB),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Notification logs
    op.create_table(
        "notification_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "recipient_user_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("app_users.id", ondelete="SET NULL"),
        ),
        sa.Column("device_token", sa.String(255)),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("delivery_id", sa.String(100)),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True)),
        sa.Column("dismissed_at", sa.DateTime(timezone=True)),
        sa.Column("trigger_key", sa.String(100)),
        sa.Column(
            "campaign_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("notification_campaigns.id", ondelete="SET NULL"),
        ),
    )
    op.create_index("ix_notification_logs_sent_at", "notification_logs", ["sent_at"])
    op.create_index("ix_notification_logs_trigger_key_sent_at", "notification_logs", ["trigger_key", "sent_at"])
    op.create_index("ix_notification_logs_campaign_id_sent_at", "notification_logs", ["campaign_id", "sent_at"])
    op.create_index("ix_notification_logs_delivery_id", "notification_logs", ["delivery_id"])
    op.create_index("ix_notification_logs_recipient_user_id", "notification_logs", ["recipient_user_id"])

    # Scheduler health
    op.create_table(
        "notification_cron_health",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("success", sa.Boolean, nullable=False),
        sa.Column("triggers_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("triggers_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("campaigns_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer, server_default="0"),
        sa.Column("issues", postgresql.JSONB, server_default="[]"),
    )
    op.create_index("ix_notification_cron_health_timestamp", "notification_cron_health", ["timestamp"])


def downgrade() -> None:
    op.drop_table("notification_cron_health")
    op.drop_table("notification_logs")
    op.drop_table("notification_triggers")
    op.drop_table("notification_campaigns")
    op.drop_table("referrals")
    op.drop_table("device_tokens")
    op.drop_table("app_users")
