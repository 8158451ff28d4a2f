"""
services/notification/fanout.py
Notification fanout: one recorded delivery attempt per recipient.

Records are flushed before dispatch and stamped with the channel's
outcome afterwards. Failures are logged and recorded, never raised, so
the business operation that triggered the fanout still succeeds.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.notification.delivery import DeliveryChannel, DeliveryResult
from services.notification.templates import RenderedMessage, email_html, format_when, render
from shared.models.models import (
    DeliveryChannelType,
    Event,
    Notification,
    NotificationTemplate,
    NotificationType,
    Registration,
    User,
)

logger = logging.getLogger(__name__)


@dataclass
class Recipient:
    user_id: UUID
    name: str
    email: Optional[str]
    phone: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "Recipient":
        return cls(user_id=user.id, name=user.username, email=user.email, phone=user.phone)

    @classmethod
    def from_registration(cls, registration: Registration) -> "Recipient":
        return cls(
            user_id=registration.user_id,
            name=registration.name,
            email=registration.email,
            phone=registration.phone,
        )


@dataclass
class EventSnapshot:
    """The parts of an event a message needs. Outlives the event row on deletion."""
    id: Optional[UUID]
    title: str
    start_at: Optional[datetime]
    location_address: Optional[str]

    @classmethod
    def from_event(cls, event: Event, keep_id: bool = True) -> "EventSnapshot":
        return cls(
            id=event.id if keep_id else None,
            title=event.title,
            start_at=event.start_at,
            location_address=event.location_address,
        )


def reminder_due_at(start_at: datetime) -> datetime:
    """Reminders go out one calendar day before the event starts."""
    return start_at - timedelta(days=1)


def tomorrow_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """[tomorrow 00:00, day after 00:00) in the reference timezone, returned in UTC."""
    tz = ZoneInfo(settings.TIMEZONE)
    now = now or datetime.now(timezone.utc)
    today = now.astimezone(tz).date()
    start = datetime.combine(today + timedelta(days=1), time.min, tzinfo=tz)
    end = datetime.combine(today + timedelta(days=2), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _render_message(
    template: NotificationTemplate,
    name: str,
    event: Optional[EventSnapshot],
    detail: Optional[str] = None,
) -> RenderedMessage:
    return render(
        template,
        name=name,
        title=event.title if event else "",
        when=format_when(event.start_at) if event else "",
        location=event.location_address if event else "",
        detail=detail or "",
    )


def build_notification(
    template: NotificationTemplate,
    recipient: Recipient,
    event: Optional[EventSnapshot] = None,
    channel: DeliveryChannelType = DeliveryChannelType.EMAIL,
    detail: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
) -> Notification:
    channel = DeliveryChannelType(channel)
    message = _render_message(template, recipient.name, event, detail)
    address = recipient.email if channel == DeliveryChannelType.EMAIL else recipient.phone
    return Notification(
        user_id=recipient.user_id,
        event_id=event.id if event else None,
        event_title=event.title if event else None,
        type=message.type,
        template=template,
        channel=channel,
        recipient=address,
        subject=message.subject,
        body=message.body if channel == DeliveryChannelType.EMAIL else message.sms,
        scheduled_for=scheduled_for,
        is_success=False,
    )


def refresh_notification(notification: Notification, name: str, event: EventSnapshot) -> Notification:
    """Re-render a queued record against the event as it is now."""
    message = _render_message(NotificationTemplate(notification.template), name, event)
    notification.event_title = event.title
    notification.subject = message.subject
    if DeliveryChannelType(notification.channel) == DeliveryChannelType.EMAIL:
        notification.body = message.body
    else:
        notification.body = message.sms
    return notification


async def deliver(channel: DeliveryChannel, notification: Notification) -> Notification:
    """Dispatch one recorded attempt and stamp its outcome. Never raises."""
    kind = DeliveryChannelType(notification.channel)
    if not notification.recipient:
        address_kind = "email address" if kind == DeliveryChannelType.EMAIL else "phone number"
        result = DeliveryResult(success=False, error=f"Recipient has no {address_kind}")
    else:
        try:
            if kind == DeliveryChannelType.EMAIL:
                result = await channel.send_email(
                    notification.recipient,
                    notification.subject,
                    notification.body,
                    email_html(notification.subject, notification.body),
                )
            elif kind == DeliveryChannelType.SMS:
                result = await channel.send_sms(notification.recipient, notification.body)
            else:
                result = await channel.send_whatsapp(notification.recipient, notification.body)
        except Exception as e:
            logger.exception(f"Delivery channel raised for notification {notification.id}")
            result = DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

    notification.sent_at = datetime.now(timezone.utc)
    notification.is_success = result.success
    notification.error_message = None if result.success else result.error
    if not result.success:
        logger.warning(
            f"Notification {notification.id} ({NotificationTemplate(notification.template).value}) "
            f"to user {notification.user_id} failed: {result.error}"
        )
    return notification


async def notify(
    db: AsyncSession,
    channel: DeliveryChannel,
    template: NotificationTemplate,
    recipients: Iterable[Recipient],
    event: Optional[EventSnapshot] = None,
    channel_type: DeliveryChannelType = DeliveryChannelType.EMAIL,
    detail: Optional[str] = None,
) -> List[Notification]:
    """Fan one template out to every recipient. Returns the stamped records."""
    records: List[Notification] = []
    for recipient in recipients:
        notification = build_notification(template, recipient, event, channel_type, detail)
        db.add(notification)
        await db.flush()
        await deliver(channel, notification)
        records.append(notification)
    await db.flush()

    delivered = sum(1 for n in records if n.is_success)
    logger.info(
        f"Fanout {template.value} for event {event.id if event else '-'}: "
        f"{delivered}/{len(records)} delivered"
    )
    return records


# ── Reminder records ──────────────────────────────────────────

async def has_reminder(db: AsyncSession, user_id: UUID, event_id: UUID) -> bool:
    existing = await db.scalar(
        select(Notification.id).where(
            Notification.user_id == user_id,
            Notification.event_id == event_id,
            Notification.type == NotificationType.REMINDER,
        ).limit(1)
    )
    return existing is not None


async def queue_reminder(
    db: AsyncSession,
    event: Event,
    recipient: Recipient,
    now: Optional[datetime] = None,
) -> Optional[Notification]:
    """Queue a reminder for later dispatch unless this pair already has one.

    When the usual due time has already passed, the reminder is queued for
    immediate dispatch only if the event starts tomorrow; events starting
    today or earlier get none.
    """
    now = now or datetime.now(timezone.utc)
    due = reminder_due_at(event.start_at)
    if due <= now:
        start, end = tomorrow_window(now)
        if not (start <= event.start_at < end):
            return None
        due = now
    if await has_reminder(db, recipient.user_id, event.id):
        return None
    notification = build_notification(
        NotificationTemplate.EVENT_REMINDER,
        recipient,
        EventSnapshot.from_event(event),
        scheduled_for=due,
    )
    db.add(notification)
    await db.flush()
    return notification


async def discard_pending(
    db: AsyncSession,
    event_id: UUID,
    user_id: Optional[UUID] = None,
    notification_type: Optional[NotificationType] = None,
) -> int:
    """Delete unsent records for an event (optionally one user / one type)."""
    stmt = delete(Notification).where(
        Notification.event_id == event_id,
        Notification.sent_at.is_(None),
    )
    if user_id is not None:
        stmt = stmt.where(Notification.user_id == user_id)
    if notification_type is not None:
        stmt = stmt.where(Notification.type == notification_type)
    result = await db.execute(stmt.execution_options(synchronize_session="fetch"))
    return result.rowcount or 0


async def reschedule_reminders(
    db: AsyncSession,
    event: Event,
    registrations: Iterable[Registration],
) -> int:
    """Drop unsent reminders and queue fresh ones from the event's current start time."""
    await discard_pending(db, event.id, notification_type=NotificationType.REMINDER)
    queued = 0
    for registration in registrations:
        if await queue_reminder(db, event, Recipient.from_registration(registration)):
            queued += 1
    return queued
