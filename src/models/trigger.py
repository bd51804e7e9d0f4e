"""
Notification trigger model - stored state of a code-defined automation rule.
Label, description and settings schema live in the trigger catalog; the row
holds activation, current settings values and the last-run snapshot.
"""
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class NotificationTrigger(Base):
    __tablename__ = "notification_triggers"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    settings: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    # Snapshot of the latest run, overwritten every run
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_run_summary: Mapped[Optional[dict]] = mapped_column(JSONB)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<NotificationTrigger {self.key} active={self.is_active}>"
