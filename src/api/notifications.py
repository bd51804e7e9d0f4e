"""
Notification API - ad-hoc sends, log browsing, metrics and gateway callbacks.

- POST /notifications/send              - user, token or segment send (preview for segments)
- GET  /notifications/logs              - paginated log rows
- GET  /notifications/logs/summary      - global windowed summary (cached)
- GET  /notifications/logs/trend        - per-day activity, ?range=7d
- GET  /notifications/summary/{scope}/{id} - WindowSummary for a trigger or campaign
- POST /notifications/events            - delivery gateway engagement callback
- GET  /notifications/monitoring        - scheduler health view
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.schemas.notifications import EngagementEvent, SendRequest
from src.services.cron_health import get_monitoring
from src.services.notification_metrics import (
    get_cached_global_summary,
    get_daily_trend,
    list_logs,
    summarize,
)
from src.services.push import record_engagement, send_direct
from src.utils.errors import NotificationEngineError
from src.utils.timezone import isoformat_or_none

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


def parse_trend_range(value: Optional[str]) -> int:
    """'24h' -> 1, '7d' -> 7, '30' -> 30. Invalid values raise 400."""
    if not value:
        return 7
    raw = value.strip().lower()
    try:
        if raw.endswith("h"):
            return max(1, -(-int(raw[:-1]) // 24))
        if raw.endswith("d"):
            return int(raw[:-1])
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="range must look like 24h, 7d or 30d")


@router.post("/send")
async def post_send(
    payload: SendRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await send_direct(db, payload)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/logs")
async def get_logs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None),
    trigger_key: Optional[str] = Query(None, alias="triggerKey"),
    campaign_id: Optional[str] = Query(None, alias="campaignId"),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await list_logs(
            db, limit=limit, offset=offset, status=status,
            trigger_key=trigger_key, campaign_id=campaign_id,
        )
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/logs/summary")
async def get_logs_summary():
    """Global summary: totals, status and column distributions, windows, aggregations."""
    return await get_cached_global_summary()


@router.get("/logs/trend")
async def get_logs_trend(
    range: Optional[str] = Query("7d"),
    db: AsyncSession = Depends(get_db),
):
    return await get_daily_trend(db, days=parse_trend_range(range))


@router.get("/summary/{scope}/{scope_id}")
async def get_scope_summary(
    scope: str,
    scope_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        return await summarize(db, scope, scope_id)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/events")
async def post_engagement_event(
    payload: EngagementEvent,
    db: AsyncSession = Depends(get_db),
):
    """Status callback from the delivery gateway; repeated events are idempotent."""
    try:
        log = await record_engagement(
            db, payload.delivery_id, payload.event,
            occurred_at=payload.occurred_at, error=payload.error,
        )
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {
        "deliveryId": log.delivery_id,
        "status": log.status,
        "deliveredAt": isoformat_or_none(log.delivered_at),
        "openedAt": isoformat_or_none(log.opened_at),
        "clickedAt": isoformat_or_none(log.clicked_at),
        "dismissedAt": isoformat_or_none(log.dismissed_at),
    }


@router.get("/monitoring")
async def get_scheduler_monitoring(db: AsyncSession = Depends(get_db)):
    return await get_monitoring(db)
