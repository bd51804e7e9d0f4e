"""
Operational alerting for the notification engine.

Alert channels:
1. Structured log (always) - at ERROR or CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns stored in Redis (SET NX EX) so repeated
failed cycles do not spam the channel. In-memory fallback when Redis is down.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Streak alerts repeat every tick until a cycle succeeds
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "cron_failure_streak": 3600,
}

_local_cooldowns: dict[str, float] = {}  # alert_type -> expiry (monotonic)

SEVERITY_PREFIX = {
    "critical": "\U0001f6a8",
    "error": "❌",
    "warning": "⚠️",
    "info": "ℹ️",
}


class AlertType:
    """Alert type constants."""
    CRON_CYCLE_FAILED = "cron_cycle_failed"
    CRON_FAILURE_STREAK = "cron_failure_streak"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


def is_alerting_configured() -> bool:
    """True when a webhook channel is configured (logs are always on)."""
    from src.config import get_settings
    return bool(get_settings().alert_webhook_url)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    Returns False when the alert was suppressed by its cooldown.
    """
    if not await _acquire_cooldown(alert_type):
        return False

    from src.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str) -> bool:
    """Atomically check-and-set the alert cooldown. True means send."""
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"pushops:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to the configured webhook (Discord/Slack compatible payload)."""
    try:
        from src.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        prefix = SEVERITY_PREFIX.get(severity, SEVERITY_PREFIX["info"])
        content = f"{prefix} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content, "text": content})
    except Exception as e:
        # Alert delivery failure must never break the scheduler cycle
        logger.warning("Failed to send webhook alert: %s", str(e))
