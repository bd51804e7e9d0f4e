"""
Notification scheduler worker - runs one monitored cycle per interval.

Enabled with CRON_SCHEDULER_ENABLED=true for single-instance deployments.
When an external scheduler drives POST /api/v1/cron/notifications instead,
leave it disabled; both paths run the same cycle.
"""
import asyncio
import logging
from datetime import datetime, timezone

from src.config import get_settings
from src.database import async_session_factory
from src.services.cron_health import run_cycle
from src.utils.logging import generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "pushops:worker_health:notification_cron"


async def _heartbeat(interval_seconds: int):
    """Store heartbeat timestamp in Redis."""
    try:
        from src.utils.cache import get_redis
        redis = await get_redis()
        await redis.set(
            HEARTBEAT_KEY,
            datetime.now(timezone.utc).isoformat(),
            ex=max(interval_seconds * 3, 60),
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_notification_cron():
    """Main loop - one health-monitored cycle per CRON_INTERVAL_SECONDS."""
    interval = get_settings().cron_interval_seconds
    logger.info("Notification cron worker started (poll every %ds)", interval)

    while True:
        try:
            set_correlation_id(generate_correlation_id())
            async with async_session_factory() as db:
                record = await run_cycle(db)
            if not record.success:
                logger.warning("Notification cycle reported %d issue(s)", len(record.issues or []))
        except asyncio.CancelledError:
            logger.info("Notification cron worker stopped")
            return
        except Exception as e:
            logger.error("Notification cron error: %s", str(e), exc_info=True)

        await _heartbeat(interval)
        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Notification cron worker stopped")
            return
