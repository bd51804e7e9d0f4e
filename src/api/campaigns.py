"""
Campaign API - create, edit, cancel and execute segmented bulk pushes.
DELETE cancels; campaign rows are never removed so their logs keep an owner.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.schemas.notifications import CampaignCreate, CampaignUpdate
from src.services.campaigns import (
    cancel_campaign,
    create_campaign,
    execute_campaign,
    get_campaign,
    list_campaigns,
    serialize_campaign,
    update_campaign,
)
from src.utils.errors import NotificationEngineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["campaigns"])


@router.get("/campaigns")
async def get_campaigns(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Campaign list with counters, newest first."""
    try:
        campaigns = await list_campaigns(db, status=status, limit=limit, offset=offset)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"campaigns": [serialize_campaign(c) for c in campaigns]}


@router.post("/campaigns", status_code=201)
async def post_campaign(
    payload: CampaignCreate,
    db: AsyncSession = Depends(get_db),
    admin_id: Optional[str] = Header(None, alias="X-Admin-Id"),
):
    try:
        campaign = await create_campaign(db, payload, created_by=admin_id)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"campaign": serialize_campaign(campaign)}


@router.get("/campaigns/{campaign_id}")
async def get_campaign_detail(
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
):
    try:
        campaign = await get_campaign(db, campaign_id)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"campaign": serialize_campaign(campaign)}


@router.put("/campaigns/{campaign_id}")
async def put_campaign(
    campaign_id: str,
    payload: CampaignUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Edit a draft or scheduled campaign (409 once sending or terminal)."""
    try:
        campaign = await update_campaign(db, campaign_id, payload)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"campaign": serialize_campaign(campaign)}


@router.delete("/campaigns/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Cancel a draft or scheduled campaign."""
    try:
        campaign = await cancel_campaign(db, campaign_id)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"campaign": serialize_campaign(campaign)}


@router.post("/campaigns/{campaign_id}/execute")
async def post_execute_campaign(
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
):
    """
    Send a scheduled campaign now.
    A campaign already claimed by another execution returns executed=false.
    """
    try:
        result = await execute_campaign(db, campaign_id)
        campaign = await get_campaign(db, campaign_id)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {**result, "campaign": serialize_campaign(campaign)}
