"""
Request schemas for the notification dashboard endpoints.
Field names follow the dashboard's JSON: snake_case for campaign columns,
camelCase for segment filters and trigger toggles.
"""
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SegmentFilter(BaseModel):
    """Declarative audience. Empty plans/countries mean "all"."""
    model_config = ConfigDict(populate_by_name=True)

    plans: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=list)
    respect_opt_out: bool = Field(default=True, alias="respectOptOut")
    only_marketing_opt_in: bool = Field(default=False, alias="onlyMarketingOptIn")
    only_reminder_opt_in: bool = Field(default=False, alias="onlyReminderOptIn")
    only_transaction_opt_in: bool = Field(default=False, alias="onlyTransactionOptIn")

    @field_validator("plans", mode="after")
    @classmethod
    def _normalize_plans(cls, value: list[str]) -> list[str]:
        return sorted({p.strip().lower() for p in value if p and p.strip()})

    @field_validator("countries", mode="after")
    @classmethod
    def _normalize_countries(cls, value: list[str]) -> list[str]:
        return sorted({c.strip().upper() for c in value if c and c.strip()})

    def to_storage(self) -> dict:
        """Serialized form stored on campaigns (dashboard key names)."""
        return self.model_dump(by_alias=True)


class CampaignCreate(BaseModel):
    name: str = ""
    description: Optional[str] = None
    campaign_type: str = "marketing"
    title: str = ""
    body: str = ""
    image_url: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    filters: SegmentFilter = Field(default_factory=SegmentFilter)
    scheduled_for: Optional[datetime] = None


class CampaignUpdate(BaseModel):
    """Partial update; only fields present in the request are applied."""
    name: Optional[str] = None
    description: Optional[str] = None
    campaign_type: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    image_url: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    filters: Optional[SegmentFilter] = None
    scheduled_for: Optional[datetime] = None


class SendRequest(BaseModel):
    """Ad-hoc send from the dashboard: one user, one raw token, or a segment."""
    model_config = ConfigDict(populate_by_name=True)

    target: Literal["user", "token", "segment"] = "segment"
    user_id: Optional[str] = Field(default=None, alias="userId")
    token: Optional[str] = None
    segment: Optional[SegmentFilter] = None
    title: str = ""
    body: str = ""
    type: str = "system"
    data: Optional[dict[str, Any]] = None
    preview: bool = False
    admin_id: Optional[str] = Field(default=None, alias="adminId")


class TriggerUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_active: Optional[bool] = Field(default=None, alias="isActive")
    settings: Optional[dict[str, Any]] = None


class EngagementEvent(BaseModel):
    """Asynchronous status callback from the delivery gateway."""
    model_config = ConfigDict(populate_by_name=True)

    delivery_id: str = Field(alias="deliveryId")
    event: Literal["delivered", "opened", "clicked", "dismissed", "failed"]
    occurred_at: Optional[datetime] = Field(default=None, alias="occurredAt")
    error: Optional[str] = None
