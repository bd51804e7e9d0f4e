"""
Campaign dispatcher - lifecycle state machine for segmented bulk pushes.

  draft <─> scheduled                           (update sets or clears scheduled_for)
  scheduled ─> sending ─> sent | failed          (execute)
  draft | scheduled ─> cancelled                 (cancel)

Every status transition is a guarded UPDATE (compare-and-set on `status`), so
two executions racing for the same campaign produce one send and one no-op.
Execute commits its claim before sending so concurrent workers observe it.
"""
import logging
import time
import uuid
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import select, update, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.campaign import (
    Campaign,
    CAMPAIGN_STATUSES,
    CAMPAIGN_TYPES,
    EDITABLE_STATUSES,
)
from src.schemas.notifications import CampaignCreate, CampaignUpdate, SegmentFilter
from src.services.push import deliver
from src.services.segments import resolve_segment, MODE_FULL
from src.utils.errors import (
    ConflictError,
    DependencyFailure,
    NotFoundError,
    ValidationError,
)
from src.utils.timezone import ensure_utc, isoformat_or_none, utc_now

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 3
MAX_LIST_LIMIT = 200


def _validate_content(name: str, title: str, body: str, campaign_type: str) -> None:
    if len(name) < MIN_NAME_LENGTH:
        raise ValidationError(f"name must be at least {MIN_NAME_LENGTH} characters")
    if not title:
        raise ValidationError("title is required")
    if not body:
        raise ValidationError("body is required")
    if campaign_type not in CAMPAIGN_TYPES:
        raise ValidationError(f"campaign_type must be one of: {', '.join(CAMPAIGN_TYPES)}")


def _parse_id(campaign_id: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(campaign_id, uuid.UUID):
        return campaign_id
    try:
        return uuid.UUID(str(campaign_id))
    except ValueError:
        raise ValidationError("Invalid campaign ID")


def serialize_campaign(campaign: Campaign) -> dict:
    """Dashboard representation of a campaign."""
    return {
        "id": str(campaign.id),
        "name": campaign.name,
        "description": campaign.description,
        "campaign_type": campaign.campaign_type,
        "title": campaign.title,
        "body": campaign.body,
        "image_url": campaign.image_url,
        "data": campaign.data or {},
        "filters": campaign.filters or {},
        "scheduled_for": isoformat_or_none(campaign.scheduled_for),
        "sent_at": isoformat_or_none(campaign.sent_at),
        "status": campaign.status,
        "error_message": campaign.error_message,
        "target_users_count": campaign.target_users_count,
        "sent_count": campaign.sent_count,
        "delivered_count": campaign.delivered_count,
        "opened_count": campaign.opened_count,
        "clicked_count": campaign.clicked_count,
        "failed_count": campaign.failed_count,
        "created_by": campaign.created_by,
        "created_at": isoformat_or_none(campaign.created_at),
        "updated_at": isoformat_or_none(campaign.updated_at),
    }


async def get_campaign(db: AsyncSession, campaign_id: Union[str, uuid.UUID]) -> Campaign:
    campaign = await db.get(Campaign, _parse_id(campaign_id))
    if not campaign:
        raise NotFoundError("Campaign not found")
    return campaign


async def list_campaigns(
    db: AsyncSession,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Campaign]:
    """Newest campaigns first, optionally filtered by status."""
    query = select(Campaign)
    if status:
        if status not in CAMPAIGN_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(CAMPAIGN_STATUSES)}")
        query = query.where(Campaign.status == status)
    limit = max(1, min(limit, MAX_LIST_LIMIT))
    query = query.order_by(Campaign.created_at.desc()).limit(limit).offset(max(offset, 0))
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_campaign(
    db: AsyncSession,
    payload: CampaignCreate,
    created_by: Optional[str] = None,
) -> Campaign:
    """Create a campaign in `scheduled` when it has a send time, else `draft`."""
    name = (payload.name or "").strip()
    title = (payload.title or "").strip()
    body = (payload.body or "").strip()
    _validate_content(name, title, body, payload.campaign_type)

    scheduled_for = ensure_utc(payload.scheduled_for)
    campaign = Campaign(
        name=name,
        description=payload.description,
        campaign_type=payload.campaign_type,
        title=title,
        body=body,
        image_url=payload.image_url,
        data=payload.data or {},
        filters=payload.filters.to_storage(),
        scheduled_for=scheduled_for,
        status="scheduled" if scheduled_for else "draft",
        created_by=created_by,
    )
    db.add(campaign)
    await db.flush()
    logger.info(
        "Campaign created: %s (%s)", campaign.name, campaign.status,
        extra={"campaign_id": str(campaign.id)},
    )
    return campaign


async def update_campaign(
    db: AsyncSession,
    campaign_id: Union[str, uuid.UUID],
    payload: CampaignUpdate,
) -> Campaign:
    """
    Update a draft or scheduled campaign. Setting or clearing `scheduled_for`
    moves the campaign between `scheduled` and `draft`.
    """
    campaign = await get_campaign(db, campaign_id)
    if campaign.status not in EDITABLE_STATUSES:
        raise ConflictError(f"Cannot update campaign in '{campaign.status}' status")

    changes = payload.model_dump(exclude_unset=True)
    if "filters" in changes:
        changes["filters"] = (payload.filters or SegmentFilter()).to_storage()
    for field in ("name", "title", "body"):
        if field in changes:
            changes[field] = (changes[field] or "").strip()
    if "data" in changes:
        changes["data"] = changes["data"] or {}

    _validate_content(
        changes.get("name", campaign.name),
        changes.get("title", campaign.title),
        changes.get("body", campaign.body),
        changes.get("campaign_type", campaign.campaign_type),
    )

    if "scheduled_for" in changes:
        changes["scheduled_for"] = ensure_utc(changes["scheduled_for"])
        changes["status"] = "scheduled" if changes["scheduled_for"] else "draft"

    if not changes:
        return campaign

    changes["updated_at"] = utc_now()
    result = await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == campaign.id, Campaign.status.in_(EDITABLE_STATUSES)))
        .values(**changes)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError("Campaign changed state while updating")

    await db.refresh(campaign)
    logger.info(
        "Campaign updated: fields=%s status=%s", sorted(changes), campaign.status,
        extra={"campaign_id": str(campaign.id)},
    )
    return campaign


async def cancel_campaign(db: AsyncSession, campaign_id: Union[str, uuid.UUID]) -> Campaign:
    """Cancel a draft or scheduled campaign. A sending campaign runs to completion."""
    campaign = await get_campaign(db, campaign_id)
    if campaign.status not in EDITABLE_STATUSES:
        raise ConflictError(f"Cannot cancel campaign in '{campaign.status}' status")

    result = await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == campaign.id, Campaign.status.in_(EDITABLE_STATUSES)))
        .values(status="cancelled", updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConflictError("Campaign changed state while cancelling")

    await db.refresh(campaign)
    logger.info("Campaign cancelled", extra={"campaign_id": str(campaign.id)})
    return campaign


async def due_campaigns(db: AsyncSession, now: Optional[datetime] = None) -> list[Campaign]:
    """Scheduled campaigns whose send time has arrived, oldest first."""
    now = now or utc_now()
    result = await db.execute(
        select(Campaign)
        .where(and_(
            Campaign.status == "scheduled",
            Campaign.scheduled_for.isnot(None),
            Campaign.scheduled_for <= now,
        ))
        .order_by(Campaign.scheduled_for, Campaign.id)
    )
    return list(result.scalars().all())


async def _claim_for_sending(db: AsyncSession, campaign_id: uuid.UUID, now: datetime) -> bool:
    """Compare-and-set scheduled -> sending. True when this caller won the claim."""
    result = await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == campaign_id, Campaign.status == "scheduled"))
        .values(status="sending", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _mark_failed(db: AsyncSession, campaign_id: uuid.UUID, message: str) -> None:
    await db.rollback()
    await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == campaign_id, Campaign.status == "sending"))
        .values(status="failed", error_message=message[:500], updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def execute_campaign(
    db: AsyncSession,
    campaign_id: Union[str, uuid.UUID],
    now: Optional[datetime] = None,
) -> dict:
    """
    Send a scheduled campaign to its resolved segment.

    Returns:
        {"executed": bool, "campaign_id": str, "status": str, "summary": dict|None}
        executed=False means another execution already claimed the campaign.

    Raises:
        ConflictError: the campaign is draft, cancelled or failed
        DependencyFailure: the gateway or store failed before any send; the
            campaign is left `failed`
    """
    now = now or utc_now()
    campaign = await get_campaign(db, campaign_id)
    cid = campaign.id

    if campaign.status in ("draft", "cancelled", "failed"):
        raise ConflictError(f"Cannot execute campaign in '{campaign.status}' status")

    if not await _claim_for_sending(db, cid, now):
        await db.refresh(campaign)
        logger.info(
            "Campaign execution skipped: already %s", campaign.status,
            extra={"campaign_id": str(cid)},
        )
        return {"executed": False, "campaign_id": str(cid), "status": campaign.status, "summary": None}

    # Publish the claim before any I/O so concurrent executors see `sending`
    await db.commit()
    await db.refresh(campaign)
    started = time.monotonic()

    try:
        segment = SegmentFilter.model_validate(campaign.filters or {})
        resolution = await resolve_segment(db, segment, mode=MODE_FULL)
        tally = await deliver(
            db,
            resolution["recipients"],
            campaign.title,
            campaign.body,
            data=dict(campaign.data or {}, **({"imageUrl": campaign.image_url} if campaign.image_url else {})),
            log_type=campaign.campaign_type,
            campaign_id=cid,
            now=now,
        )
        # Logs are durable before counters move
        await db.commit()
    except DependencyFailure as e:
        logger.error("Campaign send aborted: %s", str(e), extra={"campaign_id": str(cid)})
        await _mark_failed(db, cid, str(e))
        raise
    except SQLAlchemyError as e:
        logger.error("Campaign send aborted by store error: %s", str(e), extra={"campaign_id": str(cid)})
        await _mark_failed(db, cid, f"Store error: {e}")
        raise DependencyFailure(f"Store error while sending campaign: {e}") from e
    except Exception as e:
        logger.error("Campaign send aborted: %s", str(e), exc_info=True, extra={"campaign_id": str(cid)})
        await _mark_failed(db, cid, str(e))
        raise

    await db.execute(
        update(Campaign)
        .where(and_(Campaign.id == cid, Campaign.status == "sending"))
        .values(
            status="sent",
            sent_at=now,
            error_message=None,
            target_users_count=resolution["counts"]["users"],
            sent_count=Campaign.sent_count + tally["sent"],
            failed_count=Campaign.failed_count + tally["failed"],
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(campaign)

    summary = {
        "users": resolution["counts"]["users"],
        "tokens": resolution["counts"]["tokens"],
        "sent": tally["sent"],
        "failed": tally["failed"],
        "errors": tally["errors"],
        "durationMs": int((time.monotonic() - started) * 1000),
    }
    logger.info(
        "Campaign sent: users=%d tokens=%d sent=%d failed=%d",
        summary["users"], summary["tokens"], summary["sent"], summary["failed"],
        extra={"campaign_id": str(cid)},
    )
    return {"executed": True, "campaign_id": str(cid), "status": campaign.status, "summary": summary}
