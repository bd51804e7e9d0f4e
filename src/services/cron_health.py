"""
Cron health monitor - wraps one scheduler cycle and records how it went.

A cycle runs every active trigger, then every due campaign, sequentially. Each
run is its own failure domain: an exception is rolled back, recorded as an
issue and the cycle moves on. The cycle is successful only when nothing raised.
One CronHealthRecord is appended per cycle; the dashboard reads the newest
CRON_HEALTH_HISTORY_SIZE records.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.cron_health import CronHealthRecord
from src.services.campaigns import due_campaigns, execute_campaign
from src.services.triggers import ensure_triggers, run_trigger
from src.utils.alerting import AlertType, is_alerting_configured, send_alert
from src.utils.logging import generate_correlation_id, get_correlation_id, set_correlation_id
from src.utils.timezone import ensure_utc, isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

ALERTING_INACTIVE_MESSAGE = "Alert webhook not configured; alerting inactive"


def _issue(message: str, severity: str = "error") -> dict:
    return {"message": message, "severity": severity}


def serialize_record(record: CronHealthRecord) -> dict:
    return {
        "id": str(record.id),
        "timestamp": isoformat_or_none(record.timestamp),
        "success": record.success,
        "triggersProcessed": record.triggers_processed,
        "triggersTotal": record.triggers_total,
        "campaignsProcessed": record.campaigns_processed,
        "durationMs": record.duration_ms,
        "issues": record.issues or [],
    }


async def _recent_records(db: AsyncSession, limit: int) -> list[CronHealthRecord]:
    result = await db.execute(
        select(CronHealthRecord)
        .order_by(CronHealthRecord.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _failure_streak(db: AsyncSession, threshold: int) -> int:
    """Consecutive failed cycles before this one (looks back at most threshold records)."""
    streak = 0
    for record in await _recent_records(db, threshold):
        if record.success:
            break
        streak += 1
    return streak


async def _run_triggers(db: AsyncSession, now: datetime, issues: list) -> tuple[int, int, bool]:
    try:
        triggers = await ensure_triggers(db)
        await db.commit()
    except Exception as e:
        await db.rollback()
        issues.append(_issue(f"Loading triggers failed: {e}"))
        logger.error("Loading triggers failed: %s", str(e), exc_info=True)
        return 0, 0, False

    active_keys = [t.key for t in triggers if t.is_active]
    processed = 0
    ok = True
    for key in active_keys:
        try:
            result = await run_trigger(db, key, now=now)
            await db.commit()
            if result is not None:
                processed += 1
        except Exception as e:
            await db.rollback()
            ok = False
            issues.append(_issue(f"Trigger {key} failed: {e}"))
            logger.error(
                "Trigger run failed: %s", str(e), exc_info=True,
                extra={"trigger_key": key},
            )
    return processed, len(triggers), ok


async def _run_campaigns(db: AsyncSession, now: datetime, issues: list) -> tuple[int, bool]:
    try:
        campaign_ids = [c.id for c in await due_campaigns(db, now)]
    except Exception as e:
        await db.rollback()
        issues.append(_issue(f"Loading due campaigns failed: {e}"))
        logger.error("Loading due campaigns failed: %s", str(e), exc_info=True)
        return 0, False
    processed = 0
    ok = True
    for campaign_id in campaign_ids:
        try:
            result = await execute_campaign(db, campaign_id, now=now)
            if result["executed"]:
                processed += 1
        except Exception as e:
            await db.rollback()
            ok = False
            issues.append(_issue(f"Campaign {campaign_id} failed: {e}"))
            logger.error(
                "Campaign execution failed: %s", str(e),
                extra={"campaign_id": str(campaign_id)},
            )
    return processed, ok


async def run_cycle(db: AsyncSession, now: Optional[datetime] = None) -> CronHealthRecord:
    """
    Run one monitored scheduler cycle: triggers, then due campaigns.
    Never raises for trigger or campaign failures, including failures to load
    them; they become issues on the persisted record.
    """
    now = ensure_utc(now) or utc_now()
    if not get_correlation_id():
        set_correlation_id(generate_correlation_id())
    settings = get_settings()
    started = time.monotonic()
    issues: list[dict] = []

    triggers_processed, triggers_total, triggers_ok = await _run_triggers(db, now, issues)
    campaigns_processed, campaigns_ok = await _run_campaigns(db, now, issues)
    success = triggers_ok and campaigns_ok

    threshold = max(1, settings.cron_failure_streak_threshold)
    streak = 0
    if not success:
        streak = await _failure_streak(db, threshold - 1) + 1
        if streak >= threshold:
            issues.append(_issue(f"{streak} consecutive failed cycles", "critical"))

    if not is_alerting_configured():
        issues.append(_issue(ALERTING_INACTIVE_MESSAGE, "info"))

    record = CronHealthRecord(
        timestamp=now,
        success=success,
        triggers_processed=triggers_processed,
        triggers_total=triggers_total,
        campaigns_processed=campaigns_processed,
        duration_ms=int((time.monotonic() - started) * 1000),
        issues=issues,
    )
    db.add(record)
    await db.commit()

    log_fn = logger.info if success else logger.warning
    log_fn(
        "Notification cycle complete: success=%s triggers=%d/%d campaigns=%d issues=%d duration=%dms",
        success, triggers_processed, triggers_total, campaigns_processed,
        len(issues), record.duration_ms,
    )

    if not success:
        errors = [i["message"] for i in issues if i["severity"] == "error"]
        await send_alert(
            AlertType.CRON_CYCLE_FAILED,
            "Notification cycle failed: " + "; ".join(errors),
            correlation_id=get_correlation_id(),
            extra={"triggers_processed": triggers_processed, "campaigns_processed": campaigns_processed},
        )
        if streak >= threshold:
            await send_alert(
                AlertType.CRON_FAILURE_STREAK,
                f"Notification scheduler has failed {streak} cycles in a row",
                correlation_id=get_correlation_id(),
                severity="critical",
            )

    return record


async def get_monitoring(db: AsyncSession) -> dict:
    """
    Dashboard view of scheduler health.
    Stats are computed over the retained history (newest N cycles).
    """
    history_size = get_settings().cron_health_history_size
    records = await _recent_records(db, history_size)

    total = len(records)
    successful = sum(1 for r in records if r.success)
    stats = {
        "totalExecutions": total,
        "successfulExecutions": successful,
        "successRate": round(successful / total * 100, 1) if total else 0.0,
        "averageTriggersProcessed": (
            round(sum(r.triggers_processed for r in records) / total, 2) if total else 0.0
        ),
        "averageCampaignsProcessed": (
            round(sum(r.campaigns_processed for r in records) / total, 2) if total else 0.0
        ),
    }

    last = records[0] if records else None
    return {
        "lastHealth": serialize_record(last) if last else None,
        "recentHealths": [serialize_record(r) for r in records],
        "stats": stats,
        "issues": (last.issues or []) if last else [],
        "alertWebhookConfigured": is_alerting_configured(),
    }
