"""
Notification metrics - rolling-window summaries over the notification log.

Two views are kept side by side on purpose:
- status buckets (`sent`, `failed`) describe the current state of each send
- event buckets (`delivered`, `opened`, `clicked`, `dismissed`) count every
  send that ever reached the milestone, using the row's event timestamp

so a row that went sent -> delivered -> opened counts in the sent, delivered
and opened buckets while the status distribution only shows `opened`.

Windows are measured back from `now` (24h, 7d, 30d) plus an unbounded total;
each window's range contains the previous one, so counts never decrease from
last24h to total. Reads take no locks; a row written mid-scan may be missed.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import async_session_factory
from src.models.campaign import Campaign
from src.models.notification_log import NotificationLog, EVENT_COLUMNS, LOG_STATUSES
from src.models.trigger import NotificationTrigger
from src.utils.cache import cached_json
from src.utils.errors import ValidationError
from src.utils.timezone import ensure_utc, isoformat_or_none, utc_day_start, utc_now

logger = logging.getLogger(__name__)

WINDOWS = {
    "last24h": timedelta(hours=24),
    "last7d": timedelta(days=7),
    "last30d": timedelta(days=30),
}
BUCKETS = ("sent", "delivered", "opened", "clicked", "dismissed", "failed")
NOT_SENT_STATUSES = ("pending", "failed")
SCOPES = ("trigger", "campaign")

MIN_TREND_DAYS = 1
MAX_TREND_DAYS = 90

# Optional log columns reported in the column-presence distribution
PRESENCE_COLUMNS = (
    "delivery_id",
    "recipient_user_id",
    "delivered_at",
    "opened_at",
    "clicked_at",
    "dismissed_at",
    "error_message",
    "trigger_key",
    "campaign_id",
)

_POINT_COLUMNS = (
    NotificationLog.status,
    NotificationLog.sent_at,
    NotificationLog.delivered_at,
    NotificationLog.opened_at,
    NotificationLog.clicked_at,
    NotificationLog.dismissed_at,
)


def _point(row) -> dict:
    return {
        "status": row.status,
        "sent_at": ensure_utc(row.sent_at),
        "delivered_at": ensure_utc(row.delivered_at),
        "opened_at": ensure_utc(row.opened_at),
        "clicked_at": ensure_utc(row.clicked_at),
        "dismissed_at": ensure_utc(row.dismissed_at),
    }


def bucket_timestamps(point: dict) -> dict:
    """Map each bucket the point contributes to onto the timestamp it counts at."""
    stamps = {}
    status = point.get("status")
    sent_at = point.get("sent_at")

    if status not in NOT_SENT_STATUSES and sent_at:
        stamps["sent"] = sent_at
    if status == "failed" and sent_at:
        stamps["failed"] = sent_at

    for event, column in EVENT_COLUMNS.items():
        stamp = point.get(column)
        if stamp is None and status == event:
            stamp = sent_at
        if stamp is not None:
            stamps[event] = stamp

    return stamps


def _empty_counts() -> dict:
    return {bucket: 0 for bucket in BUCKETS}


def build_window_summary(points: Iterable[dict], now: datetime) -> dict:
    """
    Aggregate log points into per-window bucket counts.

    Args:
        points: dicts with status, sent_at and the event timestamp columns
        now: window anchor

    Returns:
        {"last24h": {...}, "last7d": {...}, "last30d": {...}, "total": {...},
         "lastSentAt", "lastDeliveredAt", "lastOpenedAt", "lastClickedAt"}
    """
    now = ensure_utc(now)
    boundaries = {name: now - span for name, span in WINDOWS.items()}
    summary = {name: _empty_counts() for name in WINDOWS}
    summary["total"] = _empty_counts()
    latest: dict[str, Optional[datetime]] = {bucket: None for bucket in BUCKETS}

    for point in points:
        for bucket, stamp in bucket_timestamps(point).items():
            stamp = ensure_utc(stamp)
            summary["total"][bucket] += 1
            for name, boundary in boundaries.items():
                if stamp >= boundary:
                    summary[name][bucket] += 1
            if latest[bucket] is None or stamp > latest[bucket]:
                latest[bucket] = stamp

    summary["lastSentAt"] = isoformat_or_none(latest["sent"])
    summary["lastDeliveredAt"] = isoformat_or_none(latest["delivered"])
    summary["lastOpenedAt"] = isoformat_or_none(latest["opened"])
    summary["lastClickedAt"] = isoformat_or_none(latest["clicked"])
    return summary


def _scope_condition(scope: str, scope_id: str):
    if scope == "trigger":
        return NotificationLog.trigger_key == scope_id
    if scope == "campaign":
        try:
            return NotificationLog.campaign_id == uuid.UUID(str(scope_id))
        except ValueError:
            raise ValidationError("Invalid campaign ID")
    raise ValidationError(f"scope must be one of: {', '.join(SCOPES)}")


async def summarize(
    db: AsyncSession,
    scope: str,
    scope_id: str,
    now: Optional[datetime] = None,
) -> dict:
    """WindowSummary for one trigger key or campaign id."""
    now = ensure_utc(now) or utc_now()
    condition = _scope_condition(scope, scope_id)
    result = await db.execute(select(*_POINT_COLUMNS).where(condition))
    summary = build_window_summary((_point(row) for row in result.all()), now)
    summary["scope"] = scope
    summary["id"] = str(scope_id)
    return summary


def _bucket_count_columns() -> list:
    """Labeled SQL aggregates per bucket, same rules as bucket_timestamps."""
    columns = [
        func.count(NotificationLog.id).filter(
            and_(NotificationLog.status.notin_(NOT_SENT_STATUSES), NotificationLog.sent_at.isnot(None))
        ).label("sent"),
        func.count(NotificationLog.id).filter(
            and_(NotificationLog.status == "failed", NotificationLog.sent_at.isnot(None))
        ).label("failed"),
    ]
    for event, column_name in EVENT_COLUMNS.items():
        column = getattr(NotificationLog, column_name)
        columns.append(
            func.count(NotificationLog.id).filter(
                or_(
                    column.isnot(None),
                    and_(NotificationLog.status == event, NotificationLog.sent_at.isnot(None)),
                )
            ).label(event)
        )
    return columns


def _bucket_counts(row) -> dict:
    return {bucket: getattr(row, bucket) or 0 for bucket in BUCKETS}


async def _total_counts(db: AsyncSession) -> dict:
    """All-time bucket counts over the whole log."""
    row = (await db.execute(select(*_bucket_count_columns()))).one()
    return _bucket_counts(row)


async def _grouped_total_counts(db: AsyncSession, group_column) -> dict:
    """All-time bucket counts per trigger key or campaign id."""
    result = await db.execute(
        select(group_column.label("scope_key"), *_bucket_count_columns())
        .where(group_column.isnot(None))
        .group_by(group_column)
    )
    return {row.scope_key: _bucket_counts(row) for row in result.all()}


async def get_global_summary(db: AsyncSession, now: Optional[datetime] = None) -> dict:
    """
    Cross-cutting summary of the whole log.

    The 24h/7d/30d windows and the last-event stamps are computed from rows
    with any timestamp inside the 30-day range. Every `total` bucket (combined,
    per trigger and per campaign) and the distributions cover the entire table.
    """
    now = ensure_utc(now) or utc_now()
    range_start = now - WINDOWS["last30d"]

    total = (await db.execute(select(func.count(NotificationLog.id)))).scalar() or 0

    status_result = await db.execute(
        select(NotificationLog.status, func.count(NotificationLog.id))
        .group_by(NotificationLog.status)
    )
    by_status = {status: count for status, count in status_result.all()}

    presence_result = await db.execute(
        select(*(
            func.count(getattr(NotificationLog, name)).label(name)
            for name in PRESENCE_COLUMNS
        ))
    )
    presence_row = presence_result.one()
    metrics = {name: getattr(presence_row, name) or 0 for name in PRESENCE_COLUMNS}

    in_range = or_(
        NotificationLog.sent_at >= range_start,
        *(getattr(NotificationLog, c) >= range_start for c in EVENT_COLUMNS.values()),
    )
    rows_result = await db.execute(
        select(*_POINT_COLUMNS, NotificationLog.trigger_key, NotificationLog.campaign_id)
        .where(in_range)
    )
    rows = rows_result.all()

    all_points = []
    by_trigger = defaultdict(list)
    by_campaign = defaultdict(list)
    for row in rows:
        point = _point(row)
        all_points.append(point)
        if row.trigger_key:
            by_trigger[row.trigger_key].append(point)
        if row.campaign_id:
            by_campaign[row.campaign_id].append(point)

    windows = build_window_summary(all_points, now)
    windows["total"] = await _total_counts(db)
    trigger_totals = await _grouped_total_counts(db, NotificationLog.trigger_key)
    campaign_totals = await _grouped_total_counts(db, NotificationLog.campaign_id)

    trigger_rows = (await db.execute(select(NotificationTrigger))).scalars().all()
    trigger_state = {t.key: t for t in trigger_rows}
    trigger_aggregations = []
    for key in sorted(set(by_trigger) | set(trigger_totals) | set(trigger_state)):
        state = trigger_state.get(key)
        trigger_windows = build_window_summary(by_trigger.get(key, []), now)
        trigger_windows["total"] = trigger_totals.get(key, _empty_counts())
        trigger_aggregations.append({
            "key": key,
            "isActive": state.is_active if state else False,
            "windows": trigger_windows,
            "lastTriggerRunAt": isoformat_or_none(state.last_run_at) if state else None,
            "lastTriggerRunContext": state.last_run_summary if state else None,
        })

    campaign_aggregations = []
    campaign_ids = set(by_campaign) | set(campaign_totals)
    if campaign_ids:
        campaign_result = await db.execute(
            select(Campaign.id, Campaign.name, Campaign.status)
            .where(Campaign.id.in_(list(campaign_ids)))
        )
        names = {row.id: (row.name, row.status) for row in campaign_result.all()}
        for campaign_id in campaign_ids:
            name, status = names.get(campaign_id, (None, None))
            campaign_windows = build_window_summary(by_campaign.get(campaign_id, []), now)
            campaign_windows["total"] = campaign_totals.get(campaign_id, _empty_counts())
            campaign_aggregations.append({
                "id": str(campaign_id),
                "name": name,
                "status": status,
                "windows": campaign_windows,
            })
        campaign_aggregations.sort(key=lambda c: (-c["windows"]["total"]["sent"], c["id"]))

    return {
        "total": total,
        "byStatus": by_status,
        "metrics": metrics,
        "windows": windows,
        "aggregations": {
            "triggers": trigger_aggregations,
            "campaigns": campaign_aggregations,
        },
        "meta": {
            "rangeStart": range_start.isoformat(),
            "computedAt": now.isoformat(),
            "rowsScanned": len(rows),
        },
    }


async def get_cached_global_summary() -> dict:
    """Global summary through the Redis cache (METRICS_CACHE_TTL_SECONDS)."""

    async def _query():
        async with async_session_factory() as db:
            return await get_global_summary(db)

    return await cached_json(
        "notifications:summary", _query, ttl=get_settings().metrics_cache_ttl_seconds
    )


def clamp_trend_days(days: int) -> int:
    return max(MIN_TREND_DAYS, min(MAX_TREND_DAYS, int(days)))


async def get_daily_trend(db: AsyncSession, days: int = 7, now: Optional[datetime] = None) -> dict:
    """
    Per-UTC-day activity for the last `days` days (today included).

    The scan is capped at METRICS_TREND_MAX_ROWS rows ordered by sent_at;
    `truncated` tells the caller the newest days are incomplete.
    """
    now = ensure_utc(now) or utc_now()
    days = clamp_trend_days(days)
    max_rows = get_settings().metrics_trend_max_rows
    start = utc_day_start(now) - timedelta(days=days - 1)

    result = await db.execute(
        select(*_POINT_COLUMNS, NotificationLog.type)
        .where(and_(NotificationLog.sent_at >= start, NotificationLog.sent_at <= now))
        .order_by(NotificationLog.sent_at)
        .limit(max_rows + 1)
    )
    rows = result.all()
    truncated = len(rows) > max_rows
    if truncated:
        rows = rows[:max_rows]
        logger.warning("Trend scan truncated at %d rows (days=%d)", max_rows, days)

    series = {}
    for offset in range(days):
        day = (start + timedelta(days=offset)).date().isoformat()
        series[day] = {
            "date": day,
            "sent": 0,
            "statuses": {},
            "events": {event: 0 for event in EVENT_COLUMNS},
            "types": {},
        }

    for row in rows:
        point = _point(row)
        day_entry = series.get(point["sent_at"].date().isoformat())
        if day_entry is None:
            continue
        day_entry["statuses"][row.status] = day_entry["statuses"].get(row.status, 0) + 1
        day_entry["types"][row.type] = day_entry["types"].get(row.type, 0) + 1
        for bucket, stamp in bucket_timestamps(point).items():
            if bucket == "sent":
                day_entry["sent"] += 1
            elif bucket in EVENT_COLUMNS:
                event_day = series.get(ensure_utc(stamp).date().isoformat())
                if event_day is not None:
                    event_day["events"][bucket] += 1

    points = list(series.values())
    return {
        "days": days,
        "range": {"start": start.isoformat(), "end": now.isoformat()},
        "series": points,
        "totals": {
            "sent": sum(p["sent"] for p in points),
            **{event: sum(p["events"][event] for p in points) for event in EVENT_COLUMNS},
        },
        "truncated": truncated,
    }


def serialize_log(log: NotificationLog) -> dict:
    return {
        "id": str(log.id),
        "recipient_user_id": str(log.recipient_user_id) if log.recipient_user_id else None,
        "type": log.type,
        "title": log.title,
        "body": log.body,
        "data": log.data or {},
        "status": log.status,
        "delivery_id": log.delivery_id,
        "error_message": log.error_message,
        "trigger_key": log.trigger_key,
        "campaign_id": str(log.campaign_id) if log.campaign_id else None,
        "sent_at": isoformat_or_none(log.sent_at),
        "delivered_at": isoformat_or_none(log.delivered_at),
        "opened_at": isoformat_or_none(log.opened_at),
        "clicked_at": isoformat_or_none(log.clicked_at),
        "dismissed_at": isoformat_or_none(log.dismissed_at),
    }


async def list_logs(
    db: AsyncSession,
    limit: int = 50,
    offset: int = 0,
    status: Optional[str] = None,
    trigger_key: Optional[str] = None,
    campaign_id: Optional[str] = None,
) -> dict:
    """Newest-first page of log rows with optional filters."""
    limit = max(1, min(200, limit))
    offset = max(0, offset)

    conditions = []
    if status:
        if status not in LOG_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(LOG_STATUSES)}")
        conditions.append(NotificationLog.status == status)
    if trigger_key:
        conditions.append(NotificationLog.trigger_key == trigger_key)
    if campaign_id:
        conditions.append(_scope_condition("campaign", campaign_id))
    where = and_(*conditions) if conditions else True

    count_result = await db.execute(
        select(func.count(NotificationLog.id)).where(where)
    )
    result = await db.execute(
        select(NotificationLog)
        .where(where)
        .order_by(NotificationLog.sent_at.desc(), NotificationLog.id)
        .limit(limit)
        .offset(offset)
    )
    return {
        "logs": [serialize_log(log) for log in result.scalars().all()],
        "total": count_result.scalar() or 0,
        "limit": limit,
        "offset": offset,
    }
