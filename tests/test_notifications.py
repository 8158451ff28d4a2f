"""
tests/test_notifications.py
Tests for the reminder job, pending-notification processing, the in-app
inbox, admin broadcasts and the cron-guarded job triggers.
"""

from datetime import datetime, time, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from services.notification import jobs
from services.notification.fanout import Recipient, queue_reminder
from services.notification.templates import render
from shared.models.models import (
    ApprovalStatus,
    Event,
    Notification,
    NotificationTemplate,
    NotificationType,
    User,
)
from tests.conftest import (
    CRON_HEADERS,
    FakeDeliveryChannel,
    auth_headers,
    make_event,
    make_registration,
)


def _tomorrow_noon() -> datetime:
    today = datetime.now(timezone.utc).date()
    return datetime.combine(today + timedelta(days=1), time(12, 0), tzinfo=timezone.utc)


async def _reminder_count(db: AsyncSession, event_id) -> int:
    return await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.event_id == event_id,
            Notification.type == NotificationType.REMINDER,
        )
    )


@pytest.fixture
def tomorrow() -> datetime:
    return _tomorrow_noon()


@pytest_asyncio.fixture
async def tomorrow_event(db: AsyncSession, organizer: User, tomorrow: datetime) -> Event:
    return await make_event(db, organizer, title="Street Festival", start_at=tomorrow)


# ── Reminder job ───────────────────────────────────────────────────────────────

def test_tomorrow_window_is_next_calendar_day():
    now = datetime(2026, 3, 14, 22, 30, tzinfo=timezone.utc)
    start, end = jobs.tomorrow_window(now)
    assert start == datetime(2026, 3, 15, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 16, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reminder_job_sends_once_per_registrant(
    db: AsyncSession,
    user: User,
    other_user: User,
    tomorrow_event: Event,
    channel: FakeDeliveryChannel,
):
    await make_registration(db, tomorrow_event, user)
    await make_registration(db, tomorrow_event, other_user)

    first = await jobs.create_tomorrow_reminders(db, channel)
    assert first == {"events": 1, "sent": 2, "failed": 0, "skipped": 0}
    assert channel.subjects_to(user.email) == ["Reminder: Street Festival is tomorrow!"]

    second = await jobs.create_tomorrow_reminders(db, channel)
    assert second == {"events": 1, "sent": 0, "failed": 0, "skipped": 2}
    assert len(channel.sent) == 2
    assert await _reminder_count(db, tomorrow_event.id) == 2


@pytest.mark.asyncio
async def test_reminder_job_ignores_other_days_and_unapproved(
    db: AsyncSession,
    organizer: User,
    user: User,
    tomorrow: datetime,
    channel: FakeDeliveryChannel,
):
    later = await make_event(db, organizer, title="Next Week Fair", start_at=tomorrow + timedelta(days=6))
    pending = await make_event(db, organizer, status=ApprovalStatus.PENDING, start_at=tomorrow)
    rejected = await make_event(db, organizer, status=ApprovalStatus.REJECTED, start_at=tomorrow)
    for event in (later, pending, rejected):
        await make_registration(db, event, user)

    summary = await jobs.create_tomorrow_reminders(db, channel)
    assert summary["events"] == 0
    assert channel.sent == []


@pytest.mark.asyncio
async def test_reminder_job_skips_pairs_already_queued(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    tomorrow_event: Event,
    channel: FakeDeliveryChannel,
):
    """Registering queued a reminder already; the batch job must not add a second one."""
    await client.post(f"/events/{tomorrow_event.id}/register", json={}, headers=auth_headers(user))

    summary = await jobs.create_tomorrow_reminders(db, channel)
    assert summary["skipped"] == 1
    assert summary["sent"] == 0
    assert await _reminder_count(db, tomorrow_event.id) == 1


@pytest.mark.asyncio
async def test_reminder_delivery_failure_is_recorded(
    db: AsyncSession,
    user: User,
    tomorrow_event: Event,
    channel: FakeDeliveryChannel,
):
    await make_registration(db, tomorrow_event, user)
    channel.fail = True

    summary = await jobs.create_tomorrow_reminders(db, channel)
    assert summary["failed"] == 1

    record = await db.scalar(select(Notification).where(Notification.type == NotificationType.REMINDER))
    assert record.is_success is False
    assert record.error_message == "provider down"


# ── Pending processing ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_process_pending_sends_due_reminders_once(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    channel.sent.clear()
    due = approved_event.start_at - timedelta(days=1)

    early = await jobs.process_pending_notifications(db, channel, now=due - timedelta(hours=1))
    assert early["processed"] == 0

    result = await jobs.process_pending_notifications(db, channel, now=due + timedelta(minutes=1))
    assert result == {"processed": 1, "successful": 1, "failed": 0}
    assert channel.subjects_to(user.email) == [f"Reminder: {approved_event.title} is tomorrow!"]

    again = await jobs.process_pending_notifications(db, channel, now=due + timedelta(minutes=2))
    assert again["processed"] == 0


@pytest.mark.asyncio
async def test_process_pending_skips_rejected_events(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    channel.sent.clear()
    approved_event.approval_status = ApprovalStatus.REJECTED
    await db.commit()

    result = await jobs.process_pending_notifications(db, channel, now=approved_event.start_at)
    assert result == {"processed": 1, "successful": 0, "failed": 1}
    assert channel.sent == []

    record = await db.scalar(select(Notification).where(Notification.type == NotificationType.REMINDER))
    assert record.error_message == "Event is no longer approved"
    assert record.sent_at is not None


@pytest.mark.asyncio
async def test_process_pending_renders_current_event_details(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    rename = await client.patch(
        f"/events/{approved_event.id}",
        json={"title": "Renamed Street Fair"},
        headers=auth_headers(admin_user),
    )
    assert rename.json()["approval_status"] == "APPROVED"
    channel.sent.clear()

    due = approved_event.start_at - timedelta(days=1)
    result = await jobs.process_pending_notifications(db, channel, now=due + timedelta(minutes=1))
    assert result == {"processed": 1, "successful": 1, "failed": 0}
    assert channel.subjects_to(user.email) == ["Reminder: Renamed Street Fair is tomorrow!"]
    assert "Renamed Street Fair" in channel.sent[0]["body"]

    record = await db.scalar(select(Notification).where(Notification.type == NotificationType.REMINDER))
    assert record.event_title == "Renamed Street Fair"


@pytest.mark.asyncio
async def test_process_pending_holds_reminders_for_events_back_in_review(
    client: AsyncClient,
    db: AsyncSession,
    organizer: User,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    edit = await client.patch(
        f"/events/{approved_event.id}",
        json={"title": "Bigger Garage Sale"},
        headers=auth_headers(organizer),
    )
    assert edit.json()["approval_status"] == "PENDING"
    channel.sent.clear()

    due = approved_event.start_at - timedelta(days=1)
    result = await jobs.process_pending_notifications(db, channel, now=due + timedelta(minutes=1))
    assert result == {"processed": 1, "successful": 0, "failed": 1}
    assert channel.sent == []


@pytest.mark.asyncio
async def test_late_registration_reminder_only_for_tomorrow(db: AsyncSession, organizer: User, user: User):
    start = datetime(2030, 5, 10, 18, 0, tzinfo=timezone.utc)
    event = await make_event(db, organizer, start_at=start)
    recipient = Recipient.from_user(user)

    assert await queue_reminder(db, event, recipient, now=start + timedelta(hours=1)) is None
    assert await queue_reminder(db, event, recipient, now=datetime(2030, 5, 10, 9, 0, tzinfo=timezone.utc)) is None
    assert await _reminder_count(db, event.id) == 0

    evening_before = datetime(2030, 5, 9, 20, 0, tzinfo=timezone.utc)
    queued = await queue_reminder(db, event, recipient, now=evening_before)
    assert queued is not None
    assert queued.scheduled_for == evening_before


def test_user_text_is_not_expanded_as_placeholders():
    message = render(
        NotificationTemplate.EVENT_UPDATED,
        name="{title}",
        title="Street Fair",
        when="Saturday",
        location="Town Hall",
        detail="Meet at {location}.",
    )
    assert message.body.startswith("Hi {title}, there is an update for \"Street Fair\".")
    assert "Meet at {location}." in message.body
    assert message.sms == "Update for \"Street Fair\": Meet at {location}."


# ── Job triggers ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_job_trigger_requires_cron_token_or_admin(client: AsyncClient, user: User, admin_user: User):
    assert (await client.post("/notifications/jobs/reminders")).status_code == 401
    assert (await client.post("/notifications/jobs/reminders", headers={"X-Cron-Token": "wrong"})).status_code == 401
    assert (await client.post("/notifications/jobs/reminders", headers=auth_headers(user))).status_code == 403
    assert (await client.post("/notifications/jobs/reminders", headers=auth_headers(admin_user))).status_code == 200


@pytest.mark.asyncio
async def test_cron_trigger_runs_reminder_job(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    tomorrow_event: Event,
):
    await make_registration(db, tomorrow_event, user)

    response = await client.post("/notifications/jobs/reminders", headers=CRON_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["job"] == "create_tomorrow_reminders"
    assert data["skipped"] is False
    assert data["result"]["sent"] == 1

    pending = await client.post("/notifications/jobs/process", headers=CRON_HEADERS)
    assert pending.status_code == 200
    assert pending.json()["result"]["processed"] == 0


@pytest.mark.asyncio
async def test_job_skipped_while_lock_held(
    client: AsyncClient,
    db: AsyncSession,
    redis,
    user: User,
    tomorrow_event: Event,
):
    await make_registration(db, tomorrow_event, user)
    token = await RedisCache(redis).acquire_job_lock(jobs.REMINDER_JOB)
    assert token is not None

    response = await client.post("/notifications/jobs/reminders", headers=CRON_HEADERS)
    assert response.json()["skipped"] is True
    assert await _reminder_count(db, tomorrow_event.id) == 0

    await RedisCache(redis).release_job_lock(jobs.REMINDER_JOB, token)
    response = await client.post("/notifications/jobs/reminders", headers=CRON_HEADERS)
    assert response.json()["result"]["sent"] == 1


# ── Inbox ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_inbox_hides_queued_reminders_and_marks_read(
    client: AsyncClient,
    user: User,
    approved_event: Event,
):
    headers = auth_headers(user)
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=headers)

    inbox = await client.get("/notifications", headers=headers)
    assert inbox.status_code == 200
    items = inbox.json()["items"]
    assert [n["template"] for n in items] == ["REGISTRATION_CONFIRMATION"]
    assert items[0]["event_title"] == approved_event.title

    count = await client.get("/notifications/unread-count", headers=headers)
    assert count.json()["unread_count"] == 1

    read = await client.post(f"/notifications/{items[0]['id']}/read", headers=headers)
    assert read.status_code == 200

    count = await client.get("/notifications/unread-count", headers=headers)
    assert count.json()["unread_count"] == 0


@pytest.mark.asyncio
async def test_read_all(client: AsyncClient, user: User, approved_event: Event):
    headers = auth_headers(user)
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=headers)
    await client.delete(f"/events/{approved_event.id}/register", headers=headers)

    unread = await client.get("/notifications", params={"unread_only": "true"}, headers=headers)
    assert unread.json()["total"] == 2

    await client.post("/notifications/read-all", headers=headers)
    unread = await client.get("/notifications", params={"unread_only": "true"}, headers=headers)
    assert unread.json()["total"] == 0


@pytest.mark.asyncio
async def test_inbox_is_private(client: AsyncClient, user: User, other_user: User, approved_event: Event):
    await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    response = await client.get("/notifications", headers=auth_headers(other_user))
    assert response.json()["total"] == 0


# ── Broadcast ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_admin_broadcast_by_sms(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    user: User,
    other_user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    """User has a phone number, other_user does not; the missing address is recorded, not raised."""
    await make_registration(db, approved_event, user)
    await make_registration(db, approved_event, other_user)

    response = await client.post(
        f"/notifications/events/{approved_event.id}/broadcast",
        json={"message": "Bring a reusable bag!", "channel": "SMS"},
        headers=auth_headers(admin_user),
    )
    assert response.status_code == 200
    assert response.json()["message"] == "Update sent to 1 of 2 registrant(s)"

    [sms] = channel.sent
    assert sms["channel"] == "sms"
    assert sms["to"] == user.phone
    assert "Bring a reusable bag!" in sms["body"]

    failed = await db.scalar(
        select(Notification).where(Notification.user_id == other_user.id)
    )
    assert failed.is_success is False
    assert failed.error_message == "Recipient has no phone number"


@pytest.mark.asyncio
async def test_broadcast_requires_admin(client: AsyncClient, organizer: User, approved_event: Event):
    response = await client.post(
        f"/notifications/events/{approved_event.id}/broadcast",
        json={"message": "Hello"},
        headers=auth_headers(organizer),
    )
    assert response.status_code == 403
