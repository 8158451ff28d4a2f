"""
services/notification/jobs.py
Scheduled notification jobs, triggered by Celery beat or the cron endpoints:

- create_tomorrow_reminders: reminders for approved events starting tomorrow
- process_pending_notifications: dispatch queued records that have come due

Overlapping runs are serialized with a Redis job lock (run_exclusive); the
partial unique index on reminder records backs up the existence check.
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from config.settings import settings
from services.notification.delivery import DeliveryChannel
from services.notification.fanout import (
    EventSnapshot,
    Recipient,
    build_notification,
    deliver,
    has_reminder,
    refresh_notification,
    tomorrow_window,
)
from services.registration.store import RegistrationStore
from shared.models.models import (
    ApprovalStatus,
    Event,
    Notification,
    NotificationTemplate,
    NotificationType,
)

logger = logging.getLogger(__name__)

REMINDER_JOB = "create_tomorrow_reminders"
PENDING_JOB = "process_pending_notifications"


async def create_tomorrow_reminders(
    db: AsyncSession,
    channel: DeliveryChannel,
    now: Optional[datetime] = None,
) -> dict:
    start, end = tomorrow_window(now)
    result = await db.execute(
        select(Event)
        .where(
            Event.approval_status == ApprovalStatus.APPROVED,
            Event.start_at >= start,
            Event.start_at < end,
        )
        .order_by(Event.start_at.asc())
    )
    events = list(result.scalars())
    registrations = RegistrationStore(db)

    sent = failed = skipped = 0
    for event in events:
        snapshot = EventSnapshot.from_event(event)
        for registration in await registrations.list_by_event(event.id):
            if await has_reminder(db, registration.user_id, event.id):
                skipped += 1
                continue
            notification = build_notification(
                NotificationTemplate.EVENT_REMINDER,
                Recipient.from_registration(registration),
                snapshot,
            )
            db.add(notification)
            await db.flush()
            await deliver(channel, notification)
            if notification.is_success:
                sent += 1
            else:
                failed += 1
    await db.flush()

    summary = {"events": len(events), "sent": sent, "failed": failed, "skipped": skipped}
    logger.info(f"Reminder job for {start.date()}: {summary}")
    return summary


async def process_pending_notifications(
    db: AsyncSession,
    channel: DeliveryChannel,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(Notification)
        .where(
            Notification.sent_at.is_(None),
            or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
        )
        .order_by(Notification.scheduled_for.asc(), Notification.created_at.asc())
        .limit(batch_size or settings.NOTIFICATION_BATCH_SIZE)
    )
    pending = list(result.scalars())

    registrations = RegistrationStore(db)
    successful = failed = 0
    for notification in pending:
        event = await db.get(Event, notification.event_id) if notification.event_id else None
        error = None
        if event is not None and event.approval_status != ApprovalStatus.APPROVED:
            error = "Event is no longer approved"
        elif event is not None and notification.type == NotificationType.REMINDER:
            registration = await registrations.get(event.id, notification.user_id)
            if registration is None:
                error = "Registration no longer exists"
            else:
                refresh_notification(notification, registration.name, EventSnapshot.from_event(event))
        if error:
            notification.sent_at = now
            notification.is_success = False
            notification.error_message = error
            failed += 1
            continue
        await deliver(channel, notification)
        if notification.is_success:
            successful += 1
        else:
            failed += 1
    await db.flush()

    summary = {"processed": len(pending), "successful": successful, "failed": failed}
    logger.info(f"Pending notification job: {summary}")
    return summary


async def run_exclusive(
    cache: RedisCache,
    job_name: str,
    job: Callable[[], Awaitable[dict]],
) -> Optional[dict]:
    """Run job under a Redis lock. Returns None when another run holds the lock."""
    token = await cache.acquire_job_lock(job_name)
    if token is None:
        logger.info(f"Job {job_name} already running; skipped")
        return None
    try:
        return await job()
    finally:
        await cache.release_job_lock(job_name, token)
