"""
tests/test_registrations.py
Tests for attendee registration: party size, deadlines, ticket tiers,
cancellation and the notifications each step records.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    Event,
    Notification,
    NotificationTemplate,
    NotificationType,
    Registration,
    User,
)
from tests.conftest import FakeDeliveryChannel, auth_headers, make_event, make_registration


async def _registration_count(db: AsyncSession, event_id) -> int:
    return await db.scalar(select(func.count(Registration.id)).where(Registration.event_id == event_id))


@pytest.mark.asyncio
async def test_register_then_cancel(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    """Party size is counted, confirmation sent, reminder queued; cancelling undoes it all."""
    url = f"/events/{approved_event.id}/register"
    response = await client.post(url, json={"additional_attendees": 2}, headers=auth_headers(user))
    assert response.status_code == 201
    data = response.json()
    assert data["party_size"] == 3
    assert data["name"] == user.username
    assert data["email"] == user.email
    assert channel.subjects_to(user.email) == [f"Registration Confirmed: {approved_event.title}"]

    queued = await db.scalar(
        select(Notification).where(
            Notification.user_id == user.id,
            Notification.type == NotificationType.REMINDER,
        )
    )
    assert queued is not None
    assert queued.sent_at is None
    assert queued.scheduled_for == approved_event.start_at - timedelta(days=1)

    status = await client.get(f"/events/{approved_event.id}/registration", headers=auth_headers(user))
    assert status.json()["registered"] is True

    cancel = await client.delete(url, headers=auth_headers(user))
    assert cancel.status_code == 200
    assert await _registration_count(db, approved_event.id) == 0

    cancelled = (await db.execute(
        select(Notification).where(
            Notification.user_id == user.id,
            Notification.template == NotificationTemplate.REGISTRATION_CANCELLED,
        )
    )).scalars().all()
    assert len(cancelled) == 1
    assert cancelled[0].is_success is True

    reminders = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.type == NotificationType.REMINDER,
        )
    )
    assert reminders == 0


@pytest.mark.asyncio
async def test_custom_contact_details_are_snapshotted(client: AsyncClient, user: User, approved_event: Event):
    response = await client.post(
        f"/events/{approved_event.id}/register",
        json={"name": "Alice & family", "email": "family@example.com"},
        headers=auth_headers(user),
    )
    assert response.status_code == 201
    assert response.json()["name"] == "Alice & family"
    assert response.json()["email"] == "family@example.com"
    assert response.json()["phone"] == user.phone


@pytest.mark.asyncio
async def test_duplicate_registration_conflicts(client: AsyncClient, user: User, approved_event: Event):
    url = f"/events/{approved_event.id}/register"
    assert (await client.post(url, json={}, headers=auth_headers(user))).status_code == 201

    again = await client.post(url, json={}, headers=auth_headers(user))
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_REGISTERED"


@pytest.mark.asyncio
async def test_cannot_register_for_unapproved_event(
    client: AsyncClient,
    db: AsyncSession,
    verified_organizer: User,
    pending_event: Event,
):
    """An organizer trying to sign up for someone else's pending event finds nothing."""
    response = await client.post(
        f"/events/{pending_event.id}/register", json={}, headers=auth_headers(verified_organizer)
    )
    assert response.status_code == 404
    assert await _registration_count(db, pending_event.id) == 0


@pytest.mark.asyncio
async def test_registration_closed_after_deadline(
    client: AsyncClient,
    db: AsyncSession,
    organizer: User,
    user: User,
):
    event = await make_event(
        db, organizer,
        registration_deadline=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    response = await client.post(f"/events/{event.id}/register", json={}, headers=auth_headers(user))
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "REGISTRATION_CLOSED"
    assert body["field"] == "registration_deadline"


@pytest.mark.asyncio
async def test_negative_attendees_rejected(client: AsyncClient, user: User, approved_event: Event):
    response = await client.post(
        f"/events/{approved_event.id}/register",
        json={"additional_attendees": -1},
        headers=auth_headers(user),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_tier_snapshot_survives_tier_edit(
    client: AsyncClient,
    db: AsyncSession,
    organizer: User,
    user: User,
):
    event = await make_event(db, organizer, tiers=[("Adult", 1500)])
    tier = event.ticket_tiers[0]

    response = await client.post(
        f"/events/{event.id}/register",
        json={"ticket_tier_id": str(tier.id)},
        headers=auth_headers(user),
    )
    assert response.status_code == 201
    assert response.json()["ticket_tier_name"] == "Adult"
    assert response.json()["ticket_price"] == 1500

    edit = await client.patch(
        f"/events/{event.id}",
        json={"ticket_tiers": [{"id": str(tier.id), "name": "Grown-up", "price": 2000}]},
        headers=auth_headers(organizer),
    )
    assert edit.status_code == 200
    assert edit.json()["ticket_tiers"][0]["name"] == "Grown-up"

    mine = await client.get("/users/me/registrations", headers=auth_headers(user))
    assert mine.status_code == 200
    [registration] = mine.json()
    assert registration["ticket_tier_name"] == "Adult"
    assert registration["ticket_price"] == 1500
    assert registration["event_title"] == event.title


@pytest.mark.asyncio
async def test_tier_from_another_event_rejected(
    client: AsyncClient,
    db: AsyncSession,
    organizer: User,
    user: User,
):
    paid = await make_event(db, organizer, tiers=[("Standard", 800)])
    other = await make_event(db, organizer, title="Charity Fun Run", tiers=[("Runner", 1200)])

    response = await client.post(
        f"/events/{paid.id}/register",
        json={"ticket_tier_id": str(other.ticket_tiers[0].id)},
        headers=auth_headers(user),
    )
    assert response.status_code == 400
    assert response.json()["field"] == "ticket_tier_id"


@pytest.mark.asyncio
async def test_cancel_without_registration_returns_404(client: AsyncClient, user: User, approved_event: Event):
    response = await client.delete(f"/events/{approved_event.id}/register", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["code"] == "REGISTRATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_only_admin_cancels_for_someone_else(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    other_user: User,
    admin_user: User,
    approved_event: Event,
):
    await make_registration(db, approved_event, user)
    url = f"/events/{approved_event.id}/register"

    denied = await client.delete(url, params={"user_id": str(user.id)}, headers=auth_headers(other_user))
    assert denied.status_code == 403

    allowed = await client.delete(url, params={"user_id": str(user.id)}, headers=auth_headers(admin_user))
    assert allowed.status_code == 200
    assert await _registration_count(db, approved_event.id) == 0


@pytest.mark.asyncio
async def test_registrant_list_for_organizer_only(
    client: AsyncClient,
    db: AsyncSession,
    organizer: User,
    user: User,
    other_user: User,
    approved_event: Event,
):
    await make_registration(db, approved_event, user, additional_attendees=1)
    url = f"/events/{approved_event.id}/registrations"

    response = await client.get(url, headers=auth_headers(organizer))
    assert response.status_code == 200
    [registration] = response.json()
    assert registration["user_id"] == str(user.id)
    assert registration["party_size"] == 2

    assert (await client.get(url, headers=auth_headers(other_user))).status_code == 403


@pytest.mark.asyncio
async def test_delivery_failure_does_not_block_registration(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    approved_event: Event,
    channel: FakeDeliveryChannel,
):
    channel.fail = True
    response = await client.post(f"/events/{approved_event.id}/register", json={}, headers=auth_headers(user))
    assert response.status_code == 201

    record = await db.scalar(
        select(Notification).where(
            Notification.template == NotificationTemplate.REGISTRATION_CONFIRMATION,
        )
    )
    assert record.is_success is False
    assert record.error_message == "provider down"
    assert record.sent_at is not None


@pytest.mark.asyncio
async def test_register_for_missing_event(client: AsyncClient, user: User):
    response = await client.post(f"/events/{uuid.uuid4()}/register", json={}, headers=auth_headers(user))
    assert response.status_code == 404
