"""
services/notification/router.py
In-app notification inbox, admin update broadcasts, and HTTP triggers
for the scheduled jobs (for external cron invokers as well as admins).
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.event.store import EventStore
from services.notification import jobs
from services.notification.delivery import DeliveryChannel, get_delivery_channel
from services.notification.fanout import EventSnapshot, Recipient, notify
from services.registration.store import RegistrationStore
from shared.middleware.auth import AccessRequired, authenticate_for, get_optional_user
from shared.models.models import Notification, NotificationTemplate, User
from shared.schemas.schemas import (
    BroadcastRequest,
    JobResultResponse,
    MessageResponse,
    NotificationResponse,
)
from shared.utils.exceptions import Unauthorized
from shared.utils.security import verify_cron_token

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Inbox ─────────────────────────────────────────────────────

@router.get("")
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(AccessRequired("notifications.inbox")),
    db: AsyncSession = Depends(get_db),
):
    """Delivered notifications for the authenticated user, newest first. Queued reminders are hidden."""
    query = select(Notification).where(
        Notification.user_id == current_user.id,
        Notification.sent_at.is_not(None),
    )
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Notification.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return {
        "items": [NotificationResponse.model_validate(n) for n in result.scalars()],
        "total": total or 0,
        "page": page,
        "page_size": page_size,
    }


@router.get("/unread-count")
async def unread_count(
    current_user: User = Depends(AccessRequired("notifications.inbox")),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.sent_at.is_not(None),
            Notification.is_read == False,  # noqa: E712
        )
    )
    return {"unread_count": count or 0}


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(AccessRequired("notifications.inbox")),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(AccessRequired("notifications.inbox")),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == current_user.id)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="Marked as read")


# ── Admin broadcast ───────────────────────────────────────────

@router.post("/events/{event_id}/broadcast", response_model=MessageResponse)
async def broadcast_event_update(
    event_id: UUID,
    data: BroadcastRequest,
    current_user: User = Depends(AccessRequired("notifications.broadcast")),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Send a free-form update to every registrant of an event."""
    event = await EventStore(db).get_by_id(event_id)
    registrations = await RegistrationStore(db).list_by_event(event.id)
    records = await notify(
        db, channel, NotificationTemplate.EVENT_UPDATED,
        [Recipient.from_registration(r) for r in registrations],
        EventSnapshot.from_event(event),
        channel_type=data.channel,
        detail=data.message,
    )
    await db.commit()
    delivered = sum(1 for r in records if r.is_success)
    return MessageResponse(message=f"Update sent to {delivered} of {len(records)} registrant(s)")


# ── Scheduled job triggers ────────────────────────────────────

async def _require_cron_or_admin(
    x_cron_token: Optional[str] = Header(None),
    current_user: Optional[User] = Depends(get_optional_user),
) -> None:
    if verify_cron_token(x_cron_token):
        return
    if current_user is None:
        raise Unauthorized("Cron token or admin credentials required")
    authenticate_for("notifications.run_jobs", current_user)


@router.post(
    "/jobs/reminders",
    response_model=JobResultResponse,
    dependencies=[Depends(_require_cron_or_admin)],
)
async def run_reminder_job(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Create and send reminders for every approved event starting tomorrow."""
    result = await jobs.run_exclusive(
        RedisCache(redis),
        jobs.REMINDER_JOB,
        lambda: jobs.create_tomorrow_reminders(db, channel),
    )
    await db.commit()
    return JobResultResponse(job=jobs.REMINDER_JOB, skipped=result is None, result=result or {})


@router.post(
    "/jobs/process",
    response_model=JobResultResponse,
    dependencies=[Depends(_require_cron_or_admin)],
)
async def run_pending_job(
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Dispatch queued notifications that have come due (one batch)."""
    result = await jobs.run_exclusive(
        RedisCache(redis),
        jobs.PENDING_JOB,
        lambda: jobs.process_pending_notifications(db, channel),
    )
    await db.commit()
    return JobResultResponse(job=jobs.PENDING_JOB, skipped=result is None, result=result or {})
