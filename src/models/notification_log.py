"""
Notification log model - one row per attempted push to one device token.

Rows are appended by campaign and trigger sends. Gateway callbacks later stamp
the event timestamp columns and advance `status` on the same row, so a row
carries both its latest status and every milestone it ever reached.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

LOG_STATUSES = ("pending", "sent", "delivered", "opened", "clicked", "dismissed", "failed")
EVENT_COLUMNS = {
    "delivered": "delivered_at",
    "opened": "opened_at",
    "clicked": "clicked_at",
    "dismissed": "dismissed_at",
}


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    recipient_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("app_users.id", ondelete="SET NULL")
    )
    device_token: Mapped[Optional[str]] = mapped_column(String(255))

    # Content
    type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # marketing, reminder, transaction, system, referral, payment
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    # Delivery
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, sent, delivered, opened, clicked, dismissed, failed
    delivery_id: Mapped[Optional[str]] = mapped_column(String(100))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Event timestamps (stamped once by gateway callbacks)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Origin
    trigger_key: Mapped[Optional[str]] = mapped_column(String(100))
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("notification_campaigns.id", ondelete="SET NULL")
    )

    __table_args__ = (
        Index("ix_notification_logs_sent_at", "sent_at"),
        Index("ix_notification_logs_trigger_key_sent_at", "trigger_key", "sent_at"),
        Index("ix_notification_logs_campaign_id_sent_at", "campaign_id", "sent_at"),
        Index("ix_notification_logs_delivery_id", "delivery_id"),
        Index("ix_notification_logs_recipient_user_id", "recipient_user_id"),
    )

    def __repr__(self) -> str:
        return f"<NotificationLog {self.type} status={self.status}>"
