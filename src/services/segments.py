"""
Segment resolver - turns a SegmentFilter into a concrete recipient set.

Filters are ANDed: active users, then plans, countries, push opt-out and every
enabled category opt-in flag. Preview mode only counts (two aggregate queries);
full mode fans out to each matching user's active device tokens. Results are
ordered by id so the same snapshot always resolves identically.
"""
import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.user import AppUser
from src.models.device_token import DeviceToken
from src.schemas.notifications import SegmentFilter

logger = logging.getLogger(__name__)

MODE_PREVIEW = "preview"
MODE_FULL = "full"


def build_user_conditions(
    segment: SegmentFilter,
    user_ids: Optional[Iterable[uuid.UUID]] = None,
) -> list:
    """SQL conditions selecting the users a segment matches."""
    conditions = [AppUser.is_active == True]  # noqa: E712

    if user_ids is not None:
        conditions.append(AppUser.id.in_(list(user_ids)))
    if segment.plans:
        conditions.append(func.lower(AppUser.plan).in_(segment.plans))
    if segment.countries:
        conditions.append(func.upper(AppUser.country).in_(segment.countries))
    if segment.respect_opt_out:
        conditions.append(AppUser.push_enabled == True)  # noqa: E712
    if segment.only_marketing_opt_in:
        conditions.append(AppUser.marketing_opt_in == True)  # noqa: E712
    if segment.only_reminder_opt_in:
        conditions.append(AppUser.reminder_opt_in == True)  # noqa: E712
    if segment.only_transaction_opt_in:
        conditions.append(AppUser.transaction_opt_in == True)  # noqa: E712

    return conditions


def _empty_resolution() -> dict:
    return {
        "user_ids": [],
        "recipients": [],
        "device_tokens": [],
        "counts": {"users": 0, "tokens": 0},
    }


async def resolve_segment(
    db: AsyncSession,
    segment: SegmentFilter,
    mode: str = MODE_FULL,
    user_ids: Optional[Iterable[uuid.UUID]] = None,
) -> dict:
    """
    Resolve a segment against the current user table.

    Args:
        segment: audience filter
        mode: "preview" (counts only) or "full" (ids and tokens)
        user_ids: optional candidate set; the segment is applied within it

    Returns:
        {"user_ids": [...], "recipients": [{"user_id", "token"}, ...],
         "device_tokens": [...], "counts": {"users": int, "tokens": int}}
        In preview mode the id and token lists are empty.
    """
    if mode not in (MODE_PREVIEW, MODE_FULL):
        raise ValueError(f"Unknown segment resolution mode: {mode}")

    if user_ids is not None:
        user_ids = list(user_ids)
        if not user_ids:
            return _empty_resolution()

    conditions = build_user_conditions(segment, user_ids)
    token_conditions = and_(*conditions, DeviceToken.is_active == True)  # noqa: E712

    if mode == MODE_PREVIEW:
        users_result = await db.execute(
            select(func.count()).select_from(AppUser).where(and_(*conditions))
        )
        tokens_result = await db.execute(
            select(func.count(DeviceToken.id))
            .join(AppUser, AppUser.id == DeviceToken.user_id)
            .where(token_conditions)
        )
        resolution = _empty_resolution()
        resolution["counts"] = {
            "users": users_result.scalar() or 0,
            "tokens": tokens_result.scalar() or 0,
        }
        return resolution

    id_result = await db.execute(
        select(AppUser.id).where(and_(*conditions)).order_by(AppUser.id)
    )
    matched_ids = list(id_result.scalars().all())

    token_result = await db.execute(
        select(DeviceToken.user_id, DeviceToken.token)
        .join(AppUser, AppUser.id == DeviceToken.user_id)
        .where(token_conditions)
        .order_by(DeviceToken.user_id, DeviceToken.token)
    )
    recipients = [
        {"user_id": row.user_id, "token": row.token}
        for row in token_result.all()
    ]

    logger.debug(
        "Segment resolved: users=%d tokens=%d plans=%s countries=%s",
        len(matched_ids), len(recipients), segment.plans, segment.countries,
    )

    return {
        "user_ids": matched_ids,
        "recipients": recipients,
        "device_tokens": [r["token"] for r in recipients],
        "counts": {"users": len(matched_ids), "tokens": len(recipients)},
    }
