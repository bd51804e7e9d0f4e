"""
App user model - the audience the engine targets.
Owned by the surrounding application; the engine only reads it.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from src.database import Base


class AppUser(Base):
    __tablename__ = "app_users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    email: Mapped[Optional[str]] = mapped_column(String(255))
    plan: Mapped[str] = mapped_column(
        String(30), default="free", nullable=False
    )  # free, smart, pro, caducado
    country: Mapped[Optional[str]] = mapped_column(String(2))  # ISO-3166 alpha-2
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Consent
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    marketing_opt_in: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_opt_in: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    transaction_opt_in: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    subscription_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    device_tokens: Mapped[list["DeviceToken"]] = relationship(back_populates="user")

    __table_args__ = (
        Index("ix_app_users_plan", "plan"),
        Index("ix_app_users_country", "country"),
        Index("ix_app_users_subscription_expires_at", "subscription_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<AppUser {str(self.id)[:8]} plan={self.plan} country={self.country}>"
