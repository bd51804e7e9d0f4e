"""
Tests for src/services/cron_health.py - monitored scheduler cycles.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.config import Settings
from src.models import CronHealthRecord
from src.schemas.notifications import CampaignCreate
from src.services.campaigns import create_campaign, get_campaign
from src.services.cron_health import ALERTING_INACTIVE_MESSAGE, get_monitoring, run_cycle
from src.services.triggers import REFERRAL_INVITED, RENEWAL_REMINDER, ensure_triggers, update_trigger
from src.utils.alerting import AlertType
from src.utils.errors import DependencyFailure


def _settings(**overrides) -> Settings:
    values = {"database_url": "sqlite+aiosqlite:///:memory:", "cron_failure_streak_threshold": 3}
    values.update(overrides)
    return Settings(**values)


async def _due_campaign(db, now, name="Flash sale"):
    return await create_campaign(db, CampaignCreate(
        name=name, title="Flash sale", body="Today only", scheduled_for=now - timedelta(minutes=1),
    ))


async def _add_record(db, now, success, minutes_ago):
    db.add(CronHealthRecord(
        timestamp=now - timedelta(minutes=minutes_ago),
        success=success, triggers_processed=1, triggers_total=3, campaigns_processed=0, issues=[],
    ))
    await db.flush()


class TestRunCycle:
    async def test_healthy_cycle(self, db, make_user, mock_push, mock_alert, now):
        await make_user(subscription_expires_at=now + timedelta(days=1))
        await ensure_triggers(db)
        await update_trigger(db, RENEWAL_REMINDER, is_active=True)
        campaign = await _due_campaign(db, now)

        record = await run_cycle(db, now=now)

        assert record.success is True
        assert record.triggers_processed == 1
        assert record.triggers_total == 3
        assert record.campaigns_processed == 1
        assert (await get_campaign(db, campaign.id)).status == "sent"
        mock_alert.assert_not_called()

    async def test_alerting_inactive_is_informational(self, db, mock_push, mock_alert, now):
        record = await run_cycle(db, now=now)
        assert record.success is True
        assert {"message": ALERTING_INACTIVE_MESSAGE, "severity": "info"} in record.issues

    async def test_failing_trigger_is_isolated(self, db, make_user, mock_push, mock_alert, now):
        """Scenario: one trigger raises, the other trigger and the due campaign still run."""
        await make_user()
        await ensure_triggers(db)
        await update_trigger(db, RENEWAL_REMINDER, is_active=True)
        await update_trigger(db, REFERRAL_INVITED, is_active=True)
        campaign_id = (await _due_campaign(db, now)).id

        from src.services import triggers as triggers_module
        original = triggers_module.TRIGGER_CATALOG[RENEWAL_REMINDER].evaluate

        async def _explode(*args, **kwargs):
            raise RuntimeError("condition query failed")

        triggers_module.TRIGGER_CATALOG[RENEWAL_REMINDER].evaluate = _explode
        try:
            record = await run_cycle(db, now=now)
        finally:
            triggers_module.TRIGGER_CATALOG[RENEWAL_REMINDER].evaluate = original

        assert record.success is False
        assert record.triggers_processed == 1
        assert record.campaigns_processed == 1
        errors = [i for i in record.issues if i["severity"] == "error"]
        assert len(errors) == 1
        assert RENEWAL_REMINDER in errors[0]["message"]
        assert (await get_campaign(db, campaign_id)).status == "sent"
        mock_alert.assert_awaited()
        assert mock_alert.await_args_list[0].args[0] == AlertType.CRON_CYCLE_FAILED

    async def test_gateway_outage_fails_campaign_and_cycle(self, db, make_user, mock_alert, now):
        await make_user()
        campaign_id = (await _due_campaign(db, now)).id

        with patch(
            "src.services.campaigns.deliver",
            new_callable=AsyncMock,
            side_effect=DependencyFailure("Push gateway not configured"),
        ):
            record = await run_cycle(db, now=now)

        assert record.success is False
        assert record.campaigns_processed == 0
        refreshed = await get_campaign(db, campaign_id)
        await db.refresh(refreshed)
        assert refreshed.status == "failed"

    async def test_due_campaign_lookup_error_is_recorded(self, db, make_user, mock_push, mock_alert, now):
        await make_user(subscription_expires_at=now + timedelta(days=1))
        await ensure_triggers(db)
        await update_trigger(db, RENEWAL_REMINDER, is_active=True)

        with patch(
            "src.services.cron_health.due_campaigns",
            new_callable=AsyncMock,
            side_effect=OperationalError("SELECT", {}, Exception("connection lost")),
        ):
            record = await run_cycle(db, now=now)

        assert record.success is False
        assert record.triggers_processed == 1
        assert record.campaigns_processed == 0
        errors = [i["message"] for i in record.issues if i["severity"] == "error"]
        assert len(errors) == 1
        assert "due campaigns" in errors[0]
        rows = (await db.execute(select(CronHealthRecord))).scalars().all()
        assert len(rows) == 1
        mock_alert.assert_awaited()

    async def test_trigger_seeding_error_still_runs_campaigns(self, db, make_user, mock_push, mock_alert, now):
        await make_user()
        campaign_id = (await _due_campaign(db, now)).id
        await db.commit()

        with patch(
            "src.services.cron_health.ensure_triggers",
            new_callable=AsyncMock,
            side_effect=OperationalError("INSERT", {}, Exception("connection lost")),
        ):
            record = await run_cycle(db, now=now)

        assert record.success is False
        assert record.triggers_total == 0
        assert record.campaigns_processed == 1
        assert any("Loading triggers failed" in i["message"] for i in record.issues)
        assert (await get_campaign(db, campaign_id)).status == "sent"

    async def test_failure_streak_raises_critical_issue(self, db, mock_alert, now):
        await _add_record(db, now, success=False, minutes_ago=10)
        await _add_record(db, now, success=False, minutes_ago=5)

        with patch("src.services.cron_health._run_campaigns", new_callable=AsyncMock, return_value=(0, False)):
            record = await run_cycle(db, now=now)

        critical = [i for i in record.issues if i["severity"] == "critical"]
        assert critical == [{"message": "3 consecutive failed cycles", "severity": "critical"}]
        alert_types = [call.args[0] for call in mock_alert.await_args_list]
        assert AlertType.CRON_FAILURE_STREAK in alert_types

    async def test_streak_broken_by_success(self, db, mock_alert, now):
        await _add_record(db, now, success=False, minutes_ago=15)
        await _add_record(db, now, success=True, minutes_ago=10)
        await _add_record(db, now, success=False, minutes_ago=5)

        with patch("src.services.cron_health._run_campaigns", new_callable=AsyncMock, return_value=(0, False)):
            record = await run_cycle(db, now=now)

        assert not [i for i in record.issues if i["severity"] == "critical"]

    async def test_record_is_persisted(self, db, mock_push, mock_alert, now):
        await run_cycle(db, now=now)
        rows = (await db.execute(select(CronHealthRecord))).scalars().all()
        assert len(rows) == 1

    async def test_configured_webhook_has_no_info_issue(self, db, mock_push, mock_alert, now):
        with patch("src.config.get_settings", return_value=_settings(alert_webhook_url="https://hooks.example.com/x")):
            record = await run_cycle(db, now=now)
        assert record.issues == []


class TestGetMonitoring:
    async def test_empty_history(self, db):
        monitoring = await get_monitoring(db)
        assert monitoring["lastHealth"] is None
        assert monitoring["stats"]["totalExecutions"] == 0
        assert monitoring["stats"]["successRate"] == 0.0
        assert monitoring["alertWebhookConfigured"] is False

    async def test_stats_over_recent_history(self, db, now):
        await _add_record(db, now, success=True, minutes_ago=15)
        await _add_record(db, now, success=False, minutes_ago=10)
        await _add_record(db, now, success=True, minutes_ago=5)
        await _add_record(db, now, success=True, minutes_ago=0)

        monitoring = await get_monitoring(db)

        assert monitoring["stats"]["totalExecutions"] == 4
        assert monitoring["stats"]["successfulExecutions"] == 3
        assert monitoring["stats"]["successRate"] == 75.0
        assert monitoring["stats"]["averageTriggersProcessed"] == 1.0
        assert monitoring["lastHealth"]["timestamp"] == now.isoformat()
        assert len(monitoring["recentHealths"]) == 4

    async def test_history_is_bounded(self, db, now):
        for minutes in range(5):
            await _add_record(db, now, success=True, minutes_ago=minutes)

        with patch("src.services.cron_health.get_settings", return_value=_settings(cron_health_history_size=3)):
            monitoring = await get_monitoring(db)

        assert len(monitoring["recentHealths"]) == 3
        assert monitoring["stats"]["totalExecutions"] == 3
