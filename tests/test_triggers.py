"""
Tests for src/services/triggers.py - catalog, settings validation and runner.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.models import NotificationLog, NotificationTrigger, Referral
from src.schemas.trigger_settings import RenewalReminderSettings, ReferralVerifiedSettings
from src.services import triggers as triggers_module
from src.services.triggers import (
    REFERRAL_INVITED,
    REFERRAL_VERIFIED,
    RENEWAL_REMINDER,
    TRIGGER_CATALOG,
    ensure_triggers,
    get_trigger,
    list_triggers,
    run_trigger,
    update_trigger,
)
from src.utils.errors import NotFoundError, ValidationError


async def _activate(db, key, **settings):
    await ensure_triggers(db)
    return await update_trigger(db, key, is_active=True, settings=settings or None)


async def _trigger_logs(db, key):
    result = await db.execute(select(NotificationLog).where(NotificationLog.trigger_key == key))
    return list(result.scalars().all())


class TestSettingsMeta:
    def test_renewal_meta_from_schema(self):
        meta = RenewalReminderSettings.settings_meta()
        assert meta == [{
            "key": "daysBefore",
            "label": "Days before expiry",
            "type": "number",
            "min": 1,
            "max": 30,
            "step": 1,
        }]

    def test_boolean_setting_type(self):
        meta = {m["key"]: m for m in ReferralVerifiedSettings.settings_meta()}
        assert meta["notifyReferredUser"]["type"] == "boolean"
        assert meta["rewardDays"]["min"] == 0


class TestCatalogState:
    async def test_seeds_inactive_rows(self, db):
        triggers = await ensure_triggers(db)
        assert [t.key for t in triggers] == list(TRIGGER_CATALOG)
        assert not any(t.is_active for t in triggers)
        assert triggers[0].settings == {"daysBefore": 3}

    async def test_seeding_is_idempotent(self, db):
        await ensure_triggers(db)
        await ensure_triggers(db)
        rows = (await db.execute(select(NotificationTrigger))).scalars().all()
        assert len(rows) == len(TRIGGER_CATALOG)

    async def test_list_includes_meta_and_last_run(self, db):
        triggers = await list_triggers(db)
        renewal = triggers[0]
        assert renewal["key"] == RENEWAL_REMINDER
        assert renewal["settingsMeta"][0]["key"] == "daysBefore"
        assert renewal["lastRun"] == {"sentAt": None, "summary": None}

    async def test_unknown_trigger(self, db):
        with pytest.raises(NotFoundError):
            await get_trigger(db, "trigger.unknown")


class TestUpdateTrigger:
    async def test_valid_settings_saved(self, db):
        trigger = await update_trigger(db, RENEWAL_REMINDER, settings={"daysBefore": 7})
        assert trigger.settings == {"daysBefore": 7}

    async def test_partial_settings_merge(self, db):
        await update_trigger(db, REFERRAL_VERIFIED, settings={"rewardDays": 14})
        trigger = await update_trigger(db, REFERRAL_VERIFIED, settings={"notifyReferredUser": True})
        assert trigger.settings == {"rewardDays": 14, "notifyReferredUser": True}

    @pytest.mark.parametrize("settings", [
        {"daysBefore": 0},
        {"daysBefore": 31},
        {"daysBefore": "5"},
        {"daysBefore": 2.5},
        {"unknownKey": 1},
    ])
    async def test_invalid_settings_rejected_without_change(self, db, settings):
        await ensure_triggers(db)
        with pytest.raises(ValidationError):
            await update_trigger(db, RENEWAL_REMINDER, is_active=True, settings=settings)
        trigger = await get_trigger(db, RENEWAL_REMINDER)
        assert trigger.settings == {"daysBefore": 3}
        assert trigger.is_active is False

    async def test_toggle_activation(self, db):
        trigger = await update_trigger(db, REFERRAL_INVITED, is_active=True)
        assert trigger.is_active is True


class TestRunTrigger:
    async def test_inactive_trigger_is_skipped(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=1))
        await ensure_triggers(db)

        result = await run_trigger(db, RENEWAL_REMINDER, now=now)

        assert result is None
        trigger = await get_trigger(db, RENEWAL_REMINDER)
        assert trigger.last_run_at is None
        assert trigger.last_run_summary is None
        mock_push.assert_not_called()

    async def test_forced_run_ignores_activation(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=1))
        await ensure_triggers(db)

        result = await run_trigger(db, RENEWAL_REMINDER, now=now, force=True)

        assert result["sent_count"] == 1
        assert result["summary"]["forced"] is True

    async def test_renewal_reminder_window(self, db, make_user, mock_push, now):
        soon = await make_user(subscription_expires_at=now + timedelta(days=2))
        await make_user(subscription_expires_at=now + timedelta(days=10))
        await make_user(subscription_expires_at=now - timedelta(days=1))
        await make_user(subscription_expires_at=None)
        await _activate(db, RENEWAL_REMINDER)

        result = await run_trigger(db, RENEWAL_REMINDER, now=now)

        assert result["recipient_count"] == 1
        logs = await _trigger_logs(db, RENEWAL_REMINDER)
        assert [log.recipient_user_id for log in logs] == [soon.id]
        assert logs[0].type == "reminder"
        assert "in 2 days" in logs[0].body

    async def test_renewal_respects_reminder_opt_in(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=1), reminder_opt_in=False)
        await make_user(subscription_expires_at=now + timedelta(days=1), push_enabled=False)
        await _activate(db, RENEWAL_REMINDER)

        result = await run_trigger(db, RENEWAL_REMINDER, now=now)

        assert result["recipient_count"] == 0
        assert result["summary"]["candidates"] == 2
        assert result["summary"]["ineligible"] == 2

    async def test_renewal_sends_once_per_day(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=1))
        await _activate(db, RENEWAL_REMINDER)

        first = await run_trigger(db, RENEWAL_REMINDER, now=now)
        second = await run_trigger(db, RENEWAL_REMINDER, now=now + timedelta(hours=2))
        next_day = await run_trigger(db, RENEWAL_REMINDER, now=now + timedelta(hours=13))

        assert first["sent_count"] == 1
        assert second["sent_count"] == 0
        assert next_day["sent_count"] == 1

    async def test_settings_change_widens_window(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=10))
        await _activate(db, RENEWAL_REMINDER, daysBefore=14)

        result = await run_trigger(db, RENEWAL_REMINDER, now=now)

        assert result["sent_count"] == 1
        assert result["summary"]["settings"] == {"daysBefore": 14}

    async def test_last_run_overwritten(self, db, make_user, mock_push, now):
        await make_user(subscription_expires_at=now + timedelta(days=1), tokens=2)
        await _activate(db, RENEWAL_REMINDER)

        await run_trigger(db, RENEWAL_REMINDER, now=now)
        later = now + timedelta(minutes=5)
        await run_trigger(db, RENEWAL_REMINDER, now=later)

        trigger = await get_trigger(db, RENEWAL_REMINDER)
        assert trigger.last_run_summary["sent"] == 0
        assert trigger.last_run_summary["candidates"] == 0

    async def test_referral_invited_notifies_once(self, db, make_user, mock_push, now):
        referrer = await make_user(tokens=1)
        referred = await make_user(tokens=1)
        db.add(Referral(referrer_id=referrer.id, referred_id=referred.id, created_at=now - timedelta(hours=2)))
        await db.flush()
        await _activate(db, REFERRAL_INVITED)

        first = await run_trigger(db, REFERRAL_INVITED, now=now)
        second = await run_trigger(db, REFERRAL_INVITED, now=now + timedelta(minutes=5))

        assert first["sent_count"] == 1
        assert second["sent_count"] == 0
        referral = (await db.execute(select(Referral))).scalar_one()
        assert referral.invited_notified_at is not None
        logs = await _trigger_logs(db, REFERRAL_INVITED)
        assert logs[0].recipient_user_id == referrer.id

    async def test_referral_invited_lookback(self, db, make_user, mock_push, now):
        referrer = await make_user()
        referred = await make_user()
        db.add(Referral(referrer_id=referrer.id, referred_id=referred.id, created_at=now - timedelta(hours=30)))
        await db.flush()
        await _activate(db, REFERRAL_INVITED)

        result = await run_trigger(db, REFERRAL_INVITED, now=now)
        assert result["sent_count"] == 0

    async def test_referral_verified_can_notify_both(self, db, make_user, mock_push, now):
        referrer = await make_user()
        referred = await make_user()
        db.add(Referral(
            referrer_id=referrer.id, referred_id=referred.id,
            created_at=now - timedelta(days=3), verified_at=now - timedelta(hours=1),
        ))
        await db.flush()
        await _activate(db, REFERRAL_VERIFIED, rewardDays=10, notifyReferredUser=True)

        result = await run_trigger(db, REFERRAL_VERIFIED, now=now)

        assert result["recipient_count"] == 2
        logs = await _trigger_logs(db, REFERRAL_VERIFIED)
        bodies = {log.recipient_user_id: log.body for log in logs}
        assert "10 extra days" in bodies[referrer.id]
        referral = (await db.execute(select(Referral))).scalar_one()
        assert referral.verified_notified_at is not None

    async def test_gateway_failures_tallied(self, db, make_user, now):
        await make_user(subscription_expires_at=now + timedelta(days=1), tokens=2)
        await _activate(db, RENEWAL_REMINDER)

        async def _reject(*args, **kwargs):
            return {"delivery_id": None, "error": "Gateway error 503", "error_type": "transient"}

        with patch("src.services.push.send_push", side_effect=_reject):
            result = await run_trigger(db, RENEWAL_REMINDER, now=now)

        assert result["failed_count"] == 2
        assert result["sent_count"] == 0
        assert len(result["errors"]) == 2

    async def test_store_error_keeps_earlier_groups(self, db, make_user, mock_push, now):
        """Pushes already sent keep their log rows and referral stamps when a later group fails."""
        first_referrer = await make_user()
        second_referrer = await make_user()
        referred = await make_user()
        first_referrer_id = first_referrer.id
        db.add(Referral(referrer_id=first_referrer.id, referred_id=referred.id, created_at=now - timedelta(hours=3)))
        db.add(Referral(referrer_id=second_referrer.id, referred_id=referred.id, created_at=now - timedelta(hours=1)))
        await db.flush()
        await _activate(db, REFERRAL_INVITED)

        real_deliver = triggers_module.deliver
        calls = 0

        async def _fail_second(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 2:
                raise OperationalError("INSERT", {}, Exception("connection lost"))
            return await real_deliver(*args, **kwargs)

        with patch("src.services.triggers.deliver", side_effect=_fail_second):
            with pytest.raises(OperationalError):
                await run_trigger(db, REFERRAL_INVITED, now=now)
        await db.rollback()

        referrals = (await db.execute(select(Referral).order_by(Referral.created_at))).scalars().all()
        assert referrals[0].invited_notified_at is not None
        assert referrals[1].invited_notified_at is None
        logs = await _trigger_logs(db, REFERRAL_INVITED)
        assert [log.recipient_user_id for log in logs] == [first_referrer_id]

        retry = await run_trigger(db, REFERRAL_INVITED, now=now + timedelta(minutes=5))
        assert retry["sent_count"] == 1
        assert mock_push.await_count == 2
