"""
Cron health record - one row per scheduler cycle.
Append-only; the dashboard reads the newest N rows.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Boolean, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class CronHealthRecord(Base):
    __tablename__ = "notification_cron_health"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    triggers_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    triggers_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    campaigns_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    issues: Mapped[list] = mapped_column(JSONB, default=list)  # [{"message": ..., "severity": ...}]

    __table_args__ = (
        Index("ix_notification_cron_health_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<CronHealthRecord {self.timestamp} success={self.success}>"
