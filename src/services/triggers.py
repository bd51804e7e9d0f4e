"""
Trigger runner - fixed catalog of automation rules fired by the scheduler.

Each trigger owns a condition (which users should hear what, right now) and a
typed settings model. The runner contract is uniform:

1. Skip inactive triggers (unless forced from the dashboard "run now")
2. Evaluate the condition into planned messages per candidate user
3. Filter candidates through the trigger's segment (consent flags)
4. Fan out to each eligible user's tokens, one log row per token
5. Apply the trigger's bookkeeping (e.g. mark referrals as notified)
6. Overwrite `last_run` with {sentAt, summary}

Steps 4-5 commit per message group, so pushes that already went out keep
their log rows and stamps if a later group fails. Failures propagate to the
caller; the cron health monitor isolates each trigger in its own failure domain.
"""
import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.notification_log import NotificationLog
from src.models.referral import Referral
from src.models.trigger import NotificationTrigger
from src.models.user import AppUser
from src.schemas.notifications import SegmentFilter
from src.schemas.trigger_settings import (
    TriggerSettings,
    RenewalReminderSettings,
    ReferralInvitedSettings,
    ReferralVerifiedSettings,
)
from src.services.push import deliver, MAX_REPORTED_ERRORS
from src.services.segments import resolve_segment, MODE_FULL
from src.utils.errors import NotFoundError, ValidationError
from src.utils.timezone import ensure_utc, isoformat_or_none, utc_day_start, utc_now

logger = logging.getLogger(__name__)

RENEWAL_REMINDER = "trigger.renewal.reminder"
REFERRAL_INVITED = "trigger.referral.invited"
REFERRAL_VERIFIED = "trigger.referral.verified"


class TriggerDefinition:
    """Code-defined part of a trigger: copy, settings schema, audience and condition."""

    def __init__(
        self,
        key: str,
        label: str,
        description: str,
        settings_model: type[TriggerSettings],
        segment: SegmentFilter,
        log_type: str,
        evaluate: Callable[[AsyncSession, TriggerSettings, datetime], Awaitable[dict]],
        after_send: Optional[Callable[[AsyncSession, list, datetime], Awaitable[None]]] = None,
    ):
        self.key = key
        self.label = label
        self.description = description
        self.settings_model = settings_model
        self.segment = segment
        self.log_type = log_type
        self.evaluate = evaluate
        self.after_send = after_send

    def default_settings(self) -> dict:
        return self.settings_model().to_storage()

    def settings_meta(self) -> list[dict]:
        return self.settings_model.settings_meta()

    def load_settings(self, stored: Optional[dict]) -> TriggerSettings:
        return self.settings_model.model_validate({**self.default_settings(), **(stored or {})})


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def _message(user_id, title: str, body: str, data: Optional[dict] = None, source_id=None) -> dict:
    """One push for one user. Messages sharing a source_id are sent and stamped together."""
    return {"user_id": user_id, "title": title, "body": body, "data": data or {}, "source_id": source_id}


async def _evaluate_renewal_reminder(
    db: AsyncSession, settings: RenewalReminderSettings, now: datetime
) -> dict:
    """Subscriptions expiring within days_before days, one reminder per user per UTC day."""
    horizon = now + timedelta(days=settings.days_before)
    result = await db.execute(
        select(AppUser.id, AppUser.plan, AppUser.subscription_expires_at)
        .where(and_(
            AppUser.is_active == True,  # noqa: E712
            AppUser.subscription_expires_at.isnot(None),
            AppUser.subscription_expires_at >= now,
            AppUser.subscription_expires_at <= horizon,
        ))
        .order_by(AppUser.id)
    )
    expiring = result.all()

    already_result = await db.execute(
        select(NotificationLog.recipient_user_id)
        .where(and_(
            NotificationLog.trigger_key == RENEWAL_REMINDER,
            NotificationLog.sent_at >= utc_day_start(now),
            NotificationLog.status != "failed",
            NotificationLog.recipient_user_id.isnot(None),
        ))
        .distinct()
    )
    already_reminded = set(already_result.scalars().all())

    messages = []
    for user_id, plan, expires_at in expiring:
        if user_id in already_reminded:
            continue
        remaining = ensure_utc(expires_at) - now
        days_left = max(0, math.ceil(remaining.total_seconds() / 86400))
        when = "today" if days_left == 0 else f"in {days_left} day{'s' if days_left != 1 else ''}"
        messages.append(_message(
            user_id,
            "Your plan is about to expire",
            f"Your {plan} plan expires {when}. Renew now to keep all your features.",
            {"screen": "subscription", "daysLeft": days_left},
        ))

    return {
        "messages": messages,
        "context": {
            "expiringUsers": len(expiring),
            "alreadyRemindedToday": len(already_reminded),
        },
    }


async def _evaluate_referral_invited(
    db: AsyncSession, settings: ReferralInvitedSettings, now: datetime
) -> dict:
    """Referrers whose invite was accepted within the look-back window."""
    since = now - timedelta(hours=settings.lookback_hours)
    result = await db.execute(
        select(Referral)
        .where(and_(
            Referral.invited_notified_at.is_(None),
            Referral.created_at >= since,
        ))
        .order_by(Referral.created_at, Referral.id)
    )
    referrals = list(result.scalars().all())
    messages = [
        _message(
            r.referrer_id,
            "Your invite was accepted",
            "A friend just joined using your referral code. "
            "You'll get your reward once their account is verified.",
            {"screen": "referrals", "referralId": str(r.id)},
            source_id=r.id,
        )
        for r in referrals
    ]
    return {"messages": messages, "context": {"referrals": len(referrals)}}


async def _evaluate_referral_verified(
    db: AsyncSession, settings: ReferralVerifiedSettings, now: datetime
) -> dict:
    """Referrals that became verified and have not been announced."""
    result = await db.execute(
        select(Referral)
        .where(and_(
            Referral.verified_at.isnot(None),
            Referral.verified_at <= now,
            Referral.verified_notified_at.is_(None),
        ))
        .order_by(Referral.verified_at, Referral.id)
    )
    referrals = list(result.scalars().all())

    if settings.reward_days:
        reward = f"You earned {settings.reward_days} extra day{'s' if settings.reward_days != 1 else ''}."
    else:
        reward = "Thanks for spreading the word."

    messages = []
    for r in referrals:
        messages.append(_message(
            r.referrer_id,
            "Referral verified",
            f"Your referral was verified. {reward}",
            {"screen": "referrals", "referralId": str(r.id)},
            source_id=r.id,
        ))
        if settings.notify_referred_user:
            messages.append(_message(
                r.referred_id,
                "Welcome aboard",
                "Your account is verified. Enjoy everything the app has to offer.",
                {"screen": "home", "referralId": str(r.id)},
                source_id=r.id,
            ))
    return {"messages": messages, "context": {"referrals": len(referrals)}}


async def _mark_referrals(db: AsyncSession, ids: list, now: datetime, column: str) -> None:
    if not ids:
        return
    result = await db.execute(select(Referral).where(Referral.id.in_(ids)))
    for referral in result.scalars().all():
        setattr(referral, column, now)


async def _after_referral_invited(db: AsyncSession, referral_ids: list, now: datetime) -> None:
    await _mark_referrals(db, referral_ids, now, "invited_notified_at")


async def _after_referral_verified(db: AsyncSession, referral_ids: list, now: datetime) -> None:
    await _mark_referrals(db, referral_ids, now, "verified_notified_at")


TRIGGER_CATALOG: dict[str, TriggerDefinition] = {
    RENEWAL_REMINDER: TriggerDefinition(
        key=RENEWAL_REMINDER,
        label="Renewal reminder",
        description="Reminds users whose subscription expires within the configured number of days. "
                    "At most one reminder per user per day.",
        settings_model=RenewalReminderSettings,
        segment=SegmentFilter(respect_opt_out=True, only_reminder_opt_in=True),
        log_type="reminder",
        evaluate=_evaluate_renewal_reminder,
    ),
    REFERRAL_INVITED: TriggerDefinition(
        key=REFERRAL_INVITED,
        label="Referral invited",
        description="Tells a referrer that someone signed up with their code.",
        settings_model=ReferralInvitedSettings,
        segment=SegmentFilter(respect_opt_out=True),
        log_type="referral",
        evaluate=_evaluate_referral_invited,
        after_send=_after_referral_invited,
    ),
    REFERRAL_VERIFIED: TriggerDefinition(
        key=REFERRAL_VERIFIED,
        label="Referral verified",
        description="Announces the reward once a referred account is verified.",
        settings_model=ReferralVerifiedSettings,
        segment=SegmentFilter(respect_opt_out=True),
        log_type="referral",
        evaluate=_evaluate_referral_verified,
        after_send=_after_referral_verified,
    ),
}


def get_definition(key: str) -> TriggerDefinition:
    definition = TRIGGER_CATALOG.get(key)
    if not definition:
        raise NotFoundError(f"Unknown trigger: {key}")
    return definition


# ---------------------------------------------------------------------------
# Stored state
# ---------------------------------------------------------------------------

def serialize_trigger(trigger: NotificationTrigger) -> dict:
    definition = get_definition(trigger.key)
    return {
        "key": trigger.key,
        "label": definition.label,
        "description": definition.description,
        "isActive": trigger.is_active,
        "settings": {**definition.default_settings(), **(trigger.settings or {})},
        "settingsMeta": definition.settings_meta(),
        "lastRun": {
            "sentAt": isoformat_or_none(trigger.last_run_at),
            "summary": trigger.last_run_summary,
        },
    }


async def ensure_triggers(db: AsyncSession) -> list[NotificationTrigger]:
    """Create rows for catalog triggers that have none yet (inactive, default settings)."""
    result = await db.execute(select(NotificationTrigger))
    rows = {t.key: t for t in result.scalars().all()}

    created = []
    for key, definition in TRIGGER_CATALOG.items():
        if key not in rows:
            row = NotificationTrigger(key=key, is_active=False, settings=definition.default_settings())
            db.add(row)
            rows[key] = row
            created.append(key)
    if created:
        await db.flush()
        logger.info("Seeded trigger rows: %s", ", ".join(created))

    return [rows[key] for key in TRIGGER_CATALOG]


async def list_triggers(db: AsyncSession) -> list[dict]:
    return [serialize_trigger(t) for t in await ensure_triggers(db)]


async def get_trigger(db: AsyncSession, key: str) -> NotificationTrigger:
    get_definition(key)
    trigger = await db.get(NotificationTrigger, key)
    if trigger is None:
        await ensure_triggers(db)
        trigger = await db.get(NotificationTrigger, key)
    return trigger


def _format_validation_error(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        field = ".".join(str(p) for p in item.get("loc", ())) or "settings"
        parts.append(f"{field}: {item.get('msg')}")
    return "; ".join(parts)


async def update_trigger(
    db: AsyncSession,
    key: str,
    is_active: Optional[bool] = None,
    settings: Optional[dict] = None,
) -> NotificationTrigger:
    """
    Toggle activation and/or change settings.
    Settings are validated against the trigger's model before anything changes:
    unknown keys, wrong types and out-of-range numbers are rejected.
    """
    definition = get_definition(key)
    trigger = await get_trigger(db, key)

    validated = None
    if settings is not None:
        if not isinstance(settings, dict):
            raise ValidationError("settings must be an object")
        merged = {**definition.default_settings(), **(trigger.settings or {}), **settings}
        try:
            validated = definition.settings_model.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid settings for {key}: {_format_validation_error(e)}") from e

    if validated is not None:
        trigger.settings = validated.to_storage()
    if is_active is not None:
        trigger.is_active = is_active
    trigger.updated_at = utc_now()
    await db.flush()

    logger.info(
        "Trigger updated: active=%s settings=%s", trigger.is_active, trigger.settings,
        extra={"trigger_key": key},
    )
    return trigger


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def _message_groups(messages: list[dict]) -> list[tuple]:
    """Split messages into (source_id, [messages]) runs; messages without a source stand alone."""
    groups: list[tuple] = []
    for message in messages:
        source_id = message.get("source_id")
        if groups and source_id is not None and groups[-1][0] == source_id:
            groups[-1][1].append(message)
        else:
            groups.append((source_id, [message]))
    return groups


async def run_trigger(
    db: AsyncSession,
    key: str,
    now: Optional[datetime] = None,
    force: bool = False,
) -> Optional[dict]:
    """
    Run one trigger.

    Returns None when the trigger is inactive and not forced (last_run is left
    untouched), otherwise:
        {"sent_count", "recipient_count", "failed_count", "errors", "summary"}
    """
    now = ensure_utc(now) or utc_now()
    definition = get_definition(key)
    trigger = await get_trigger(db, key)

    if not trigger.is_active and not force:
        logger.debug("Trigger inactive, skipping", extra={"trigger_key": key})
        return None

    started = time.monotonic()
    settings = definition.load_settings(trigger.settings)
    plan = await definition.evaluate(db, settings, now)
    messages = plan["messages"]

    candidate_ids = {m["user_id"] for m in messages}
    resolution = await resolve_segment(db, definition.segment, mode=MODE_FULL, user_ids=candidate_ids)
    eligible = set(resolution["user_ids"])
    tokens_by_user = defaultdict(list)
    for recipient in resolution["recipients"]:
        tokens_by_user[recipient["user_id"]].append(recipient)

    sent = failed = 0
    errors: list[dict] = []
    recipients = set()
    for source_id, group in _message_groups(messages):
        for message in group:
            user_id = message["user_id"]
            if user_id not in eligible:
                continue
            recipients.add(user_id)
            tally = await deliver(
                db,
                tokens_by_user.get(user_id, []),
                message["title"],
                message["body"],
                data=message["data"],
                log_type=definition.log_type,
                trigger_key=key,
                now=now,
            )
            sent += tally["sent"]
            failed += tally["failed"]
            errors.extend(tally["errors"][:MAX_REPORTED_ERRORS - len(errors)])

        if definition.after_send and source_id is not None:
            await definition.after_send(db, [source_id], now)
        await db.commit()

    summary = {
        "candidates": len(candidate_ids),
        "recipients": len(recipients),
        "ineligible": len(candidate_ids - eligible),
        "tokens": resolution["counts"]["tokens"],
        "sent": sent,
        "failed": failed,
        "errors": errors,
        "forced": force,
        "settings": settings.to_storage(),
        "durationMs": int((time.monotonic() - started) * 1000),
        **plan.get("context", {}),
    }
    trigger.last_run_at = now
    trigger.last_run_summary = summary
    await db.flush()

    logger.info(
        "Trigger run complete: candidates=%d recipients=%d sent=%d failed=%d",
        summary["candidates"], summary["recipients"], sent, failed,
        extra={"trigger_key": key},
    )
    return {
        "sent_count": sent,
        "recipient_count": len(recipients),
        "failed_count": failed,
        "errors": errors,
        "summary": summary,
    }
