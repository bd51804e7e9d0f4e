"""
Notification campaign model - a segmented one-time or scheduled bulk push.

Lifecycle: draft|scheduled -> sending -> sent|failed, draft|scheduled -> cancelled.
`status` is the only mutual-exclusion field: execution claims a campaign with a
compare-and-set UPDATE on it.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

CAMPAIGN_TYPES = ("marketing", "reminder", "transaction", "system", "referral", "payment")
CAMPAIGN_STATUSES = ("draft", "scheduled", "sending", "sent", "cancelled", "failed")
EDITABLE_STATUSES = ("draft", "scheduled")


class Campaign(Base):
    __tablename__ = "notification_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    campaign_type: Mapped[str] = mapped_column(
        String(30), default="marketing", nullable=False
    )

    # Message
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(500))
    data: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)

    # Audience - serialized SegmentFilter
    filters: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(
        String(20), default="draft", nullable=False
    )  # draft, scheduled, sending, sent, cancelled, failed
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Results
    target_users_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    delivered_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    opened_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clicked_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_notification_campaigns_status", "status"),
        Index("ix_notification_campaigns_status_scheduled_for", "status", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return f"<Campaign {self.name} ({self.status})>"
