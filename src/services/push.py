"""
Push delivery service - gateway client, per-token fan-out and engagement callbacks.

The gateway accepts (token, title, body, data) and answers with a delivery id
or an error. Retries of transient errors belong to the gateway; here every
send resolves to exactly one log row with status `sent` or `failed`.

Gateway error handling:
- 2xx with an id: accepted, logged as `sent`
- 4xx: permanent rejection (invalid/expired token, bad payload)
- 5xx, timeouts, transport errors: transient, surfaced as `failed`
- gateway not configured: DependencyFailure, nothing is attempted or logged
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.models.campaign import Campaign, CAMPAIGN_TYPES
from src.models.device_token import DeviceToken
from src.models.notification_log import NotificationLog, EVENT_COLUMNS
from src.schemas.notifications import SegmentFilter, SendRequest
from src.services.segments import resolve_segment, MODE_FULL, MODE_PREVIEW
from src.utils.errors import DependencyFailure, NotFoundError, ValidationError
from src.utils.logging import mask_secret

logger = logging.getLogger(__name__)

# Errors kept in a run summary; the rest are only counted
MAX_REPORTED_ERRORS = 20

# Status progression for engagement callbacks; `failed` always wins
STATUS_RANK = {
    "pending": 0,
    "sent": 1,
    "delivered": 2,
    "dismissed": 3,
    "opened": 3,
    "clicked": 4,
}

CAMPAIGN_EVENT_COUNTERS = {
    "delivered": "delivered_count",
    "opened": "opened_count",
    "clicked": "clicked_count",
    "failed": "failed_count",
}


def mask_token(token: str) -> str:
    """Mask a device token for API responses: first 8 chars only."""
    return mask_secret(token)


def is_gateway_configured() -> bool:
    return bool(get_settings().push_gateway_url)


def _ensure_gateway_configured() -> None:
    if not is_gateway_configured():
        raise DependencyFailure("Push gateway not configured (PUSH_GATEWAY_URL is empty)")


def _new_client() -> httpx.AsyncClient:
    settings = get_settings()
    headers = {"Content-Type": "application/json"}
    if settings.push_gateway_token:
        headers["Authorization"] = f"Bearer {settings.push_gateway_token}"
    return httpx.AsyncClient(timeout=settings.push_gateway_timeout_seconds, headers=headers)


async def send_push(
    token: str,
    title: str,
    body: str,
    data: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Send one push through the delivery gateway.

    Returns:
        {"delivery_id": str|None, "error": str|None, "error_type": "transient"|"permanent"|None}
    """
    _ensure_gateway_configured()
    url = get_settings().push_gateway_url
    payload = {"to": token, "title": title, "body": body, "data": data or {}}

    owns_client = client is None
    if owns_client:
        client = _new_client()
    try:
        response = await client.post(url, json=payload)
    except httpx.TimeoutException as e:
        return {"delivery_id": None, "error": f"Gateway timeout: {e}", "error_type": "transient"}
    except httpx.HTTPError as e:
        return {"delivery_id": None, "error": f"Gateway unreachable: {e}", "error_type": "transient"}
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code >= 500:
        return {
            "delivery_id": None,
            "error": f"Gateway error {response.status_code}",
            "error_type": "transient",
        }
    if response.status_code >= 400:
        return {
            "delivery_id": None,
            "error": f"Rejected ({response.status_code}): {response.text[:200]}",
            "error_type": "permanent",
        }

    try:
        result = response.json()
    except ValueError:
        result = {}
    delivery_id = result.get("id") or (result.get("data") or {}).get("id")
    if not delivery_id:
        return {
            "delivery_id": None,
            "error": "Gateway response missing delivery id",
            "error_type": "permanent",
        }
    return {"delivery_id": str(delivery_id), "error": None, "error_type": None}


async def deliver(
    db: AsyncSession,
    recipients: list[dict],
    title: str,
    body: str,
    data: Optional[dict] = None,
    log_type: str = "system",
    trigger_key: Optional[str] = None,
    campaign_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Send to every recipient token and write one log row per token.

    Gateway calls run concurrently up to PUSH_SEND_CONCURRENCY; a failing token
    never aborts the others. Log rows are flushed before returning so callers
    persist their counters after the logs.

    Returns:
        {"attempted": int, "sent": int, "failed": int, "errors": [{"token", "error"}]}
    """
    tally = {"attempted": 0, "sent": 0, "failed": 0, "errors": []}
    if not recipients:
        return tally

    _ensure_gateway_configured()
    now = now or datetime.now(timezone.utc)
    payload_data = dict(data or {})
    if trigger_key:
        payload_data.setdefault("triggerKey", trigger_key)
    if campaign_id:
        payload_data.setdefault("campaignId", str(campaign_id))

    semaphore = asyncio.Semaphore(max(1, get_settings().push_send_concurrency))

    async with _new_client() as client:

        async def _send_one(recipient: dict) -> dict:
            async with semaphore:
                try:
                    return await send_push(recipient["token"], title, body, payload_data, client=client)
                except DependencyFailure:
                    raise
                except Exception as e:
                    logger.warning(
                        "Push send raised: %s", str(e),
                        extra={"device_token": recipient["token"]},
                    )
                    return {"delivery_id": None, "error": str(e), "error_type": "transient"}

        results = await asyncio.gather(*(_send_one(r) for r in recipients))

    for recipient, result in zip(recipients, results):
        tally["attempted"] += 1
        error = result.get("error")
        db.add(NotificationLog(
            recipient_user_id=recipient.get("user_id"),
            device_token=recipient["token"],
            type=log_type,
            title=title,
            body=body,
            data=payload_data or None,
            status="failed" if error else "sent",
            delivery_id=result.get("delivery_id"),
            error_message=error,
            sent_at=now,
            trigger_key=trigger_key,
            campaign_id=campaign_id,
        ))
        if error:
            tally["failed"] += 1
            if len(tally["errors"]) < MAX_REPORTED_ERRORS:
                tally["errors"].append({"token": mask_token(recipient["token"]), "error": error})
        else:
            tally["sent"] += 1

    await db.flush()

    log_fn = logger.warning if tally["failed"] else logger.info
    log_fn(
        "Push fan-out complete: attempted=%d sent=%d failed=%d",
        tally["attempted"], tally["sent"], tally["failed"],
        extra={"trigger_key": trigger_key, "campaign_id": str(campaign_id) if campaign_id else None},
    )
    return tally


async def record_engagement(
    db: AsyncSession,
    delivery_id: str,
    event: str,
    occurred_at: Optional[datetime] = None,
    error: Optional[str] = None,
) -> NotificationLog:
    """
    Apply a gateway status callback to its log row.

    Event timestamps are stamped once; status only moves forward. The owning
    campaign's engagement counter is incremented the first time an event is
    seen for the row.
    """
    if event != "failed" and event not in EVENT_COLUMNS:
        raise ValidationError(f"Unknown engagement event: {event}")

    result = await db.execute(
        select(NotificationLog).where(NotificationLog.delivery_id == delivery_id).limit(1)
    )
    log = result.scalar_one_or_none()
    if not log:
        raise NotFoundError(f"No notification found for delivery id {delivery_id}")

    occurred_at = occurred_at or datetime.now(timezone.utc)
    first_occurrence = False

    if event == "failed":
        first_occurrence = log.status != "failed"
        log.status = "failed"
        log.error_message = error or log.error_message or "Delivery failed"
    else:
        column = EVENT_COLUMNS[event]
        if getattr(log, column) is None:
            setattr(log, column, occurred_at)
            first_occurrence = True
        if log.status != "failed" and STATUS_RANK[event] > STATUS_RANK.get(log.status, 0):
            log.status = event

    counter_name = CAMPAIGN_EVENT_COUNTERS.get(event)
    if first_occurrence and log.campaign_id and counter_name:
        counter = getattr(Campaign, counter_name)
        await db.execute(
            update(Campaign)
            .where(Campaign.id == log.campaign_id)
            .values({counter_name: counter + 1})
        )

    await db.flush()
    logger.debug(
        "Engagement %s recorded (first=%s)", event, first_occurrence,
        extra={"delivery_id": delivery_id},
    )
    return log


async def send_direct(db: AsyncSession, request: SendRequest) -> dict:
    """
    Ad-hoc send from the dashboard.

    target="user" sends to every active token of one user, target="token" to a
    single raw token, target="segment" to a resolved segment. With
    preview=True a segment request only returns {"preview": {users, tokens}}.
    """
    title = (request.title or "").strip()
    body = (request.body or "").strip()
    if request.type not in CAMPAIGN_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(CAMPAIGN_TYPES)}")

    if request.target == "segment":
        segment = request.segment or SegmentFilter()
        if request.preview:
            resolution = await resolve_segment(db, segment, mode=MODE_PREVIEW)
            return {"preview": resolution["counts"]}
        if not title or not body:
            raise ValidationError("title and body are required")
        resolution = await resolve_segment(db, segment, mode=MODE_FULL)
        recipients = resolution["recipients"]
        users = resolution["counts"]["users"]

    elif request.target == "user":
        if not title or not body:
            raise ValidationError("title and body are required")
        try:
            user_id = uuid.UUID(str(request.user_id))
        except ValueError:
            raise ValidationError("userId must be a valid UUID")
        # Direct sends address one known user; consent filters do not apply
        resolution = await resolve_segment(
            db, SegmentFilter(respect_opt_out=False), mode=MODE_FULL, user_ids=[user_id]
        )
        if not resolution["user_ids"]:
            raise NotFoundError("User not found or inactive")
        recipients = resolution["recipients"]
        users = 1

    else:
        if not title or not body:
            raise ValidationError("title and body are required")
        token = (request.token or "").strip()
        if not token:
            raise ValidationError("token is required")
        owner = await db.execute(
            select(DeviceToken.user_id).where(DeviceToken.token == token).limit(1)
        )
        recipients = [{"user_id": owner.scalar_one_or_none(), "token": token}]
        users = 1 if recipients[0]["user_id"] else 0

    tally = await deliver(db, recipients, title, body, request.data, log_type=request.type)
    logger.info(
        "Direct send by %s: target=%s users=%d sent=%d failed=%d",
        request.admin_id or "unknown", request.target, users, tally["sent"], tally["failed"],
    )
    return {
        "users": users,
        "tokens": len(recipients),
        "sent": tally["sent"],
        "failed": tally["failed"],
        "errors": tally["errors"],
    }
