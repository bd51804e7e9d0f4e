"""
Trigger API - list the catalog with last-run snapshots, toggle and tune
triggers, and run one on demand.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.database import get_db
from src.schemas.notifications import TriggerUpdate
from src.services.triggers import (
    get_trigger,
    list_triggers,
    run_trigger,
    serialize_trigger,
    update_trigger,
)
from src.utils.errors import NotificationEngineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["triggers"])


@router.get("/triggers")
async def get_triggers(db: AsyncSession = Depends(get_db)):
    """Every catalog trigger with settings, settingsMeta and lastRun."""
    return {"triggers": await list_triggers(db)}


@router.patch("/triggers/{key}")
async def patch_trigger(
    key: str,
    payload: TriggerUpdate,
    db: AsyncSession = Depends(get_db),
):
    try:
        trigger = await update_trigger(
            db, key, is_active=payload.is_active, settings=payload.settings
        )
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"trigger": serialize_trigger(trigger)}


@router.post("/triggers/{key}/run")
async def post_run_trigger(
    key: str,
    db: AsyncSession = Depends(get_db),
):
    """Run now, even when the trigger is inactive."""
    try:
        result = await run_trigger(db, key, force=True)
        trigger = await get_trigger(db, key)
    except NotificationEngineError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return {"result": result, "trigger": serialize_trigger(trigger)}
