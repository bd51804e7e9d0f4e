"""
Typed settings per trigger.

Each trigger's tunable parameters are one pydantic model. The dashboard's
settingsMeta descriptors are generated from the model's JSON schema, so the
stored settings and their validation metadata come from a single definition.
"""
from pydantic import BaseModel, ConfigDict, Field


class TriggerSettings(BaseModel):
    """Base for trigger settings: unknown keys and loose types are rejected."""
    model_config = ConfigDict(extra="forbid", strict=True)

    @classmethod
    def settings_meta(cls) -> list[dict]:
        """Build [{key, label, type, min?, max?, step?}] from the model schema."""
        schema = cls.model_json_schema(by_alias=True)
        meta = []
        for key, prop in schema.get("properties", {}).items():
            entry = {
                "key": key,
                "label": prop.get("title", key),
                "type": "boolean" if prop.get("type") == "boolean" else "number",
            }
            for schema_key, meta_key in (("minimum", "min"), ("maximum", "max"), ("step", "step")):
                if schema_key in prop:
                    entry[meta_key] = prop[schema_key]
            meta.append(entry)
        return meta

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True)


class RenewalReminderSettings(TriggerSettings):
    days_before: int = Field(
        default=3, ge=1, le=30, alias="daysBefore",
        title="Days before expiry", json_schema_extra={"step": 1},
    )


class ReferralInvitedSettings(TriggerSettings):
    lookback_hours: int = Field(
        default=24, ge=1, le=168, alias="lookbackHours",
        title="Look-back window (hours)", json_schema_extra={"step": 1},
    )


class ReferralVerifiedSettings(TriggerSettings):
    reward_days: int = Field(
        default=7, ge=0, le=90, alias="rewardDays",
        title="Reward days announced", json_schema_extra={"step": 1},
    )
    notify_referred_user: bool = Field(
        default=False, alias="notifyReferredUser",
        title="Also notify the referred user",
    )
