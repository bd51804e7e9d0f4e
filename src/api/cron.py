"""
Scheduler entry point - the external cron calls this once per tick.
Authenticated with `Authorization: Bearer <CRON_SECRET>`.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.database import get_db
from src.services.cron_health import run_cycle, serialize_record

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(status_code=503, detail="CRON_SECRET not configured")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        logger.warning("Rejected cron call with invalid credentials")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/notifications", dependencies=[Depends(verify_cron_secret)])
async def run_notification_cycle(db: AsyncSession = Depends(get_db)):
    """Run triggers and due campaigns; failures are reported in the health record."""
    record = await run_cycle(db)
    return serialize_record(record)
