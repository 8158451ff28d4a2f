"""
services/event/lifecycle.py
Event lifecycle controller.

    PENDING ──approve──▶ APPROVED
       │  ◀──edit by non-verified organizer──┘
       └──reject──▶ REJECTED
    any state ──delete──▶ (gone)

Every transition passes the access gate first, validates before writing,
and fans notifications out after the store write. Notification failures
never fail the transition.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from services.event.store import EventStore
from services.notification.delivery import DeliveryChannel
from services.notification.fanout import (
    EventSnapshot,
    Recipient,
    discard_pending,
    notify,
    queue_reminder,
    reschedule_reminders,
)
from services.registration.store import RegistrationStore
from shared.middleware.auth import authorize, is_owner_or_admin
from shared.models.models import (
    ApprovalStatus,
    Event,
    NotificationTemplate,
    NotificationType,
    Registration,
    User,
)
from shared.schemas.schemas import EventCreateRequest, EventUpdateRequest, RegistrationRequest
from shared.utils.exceptions import (
    Forbidden,
    NotFound,
    RegistrationClosed,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Edits to any of these re-enter moderation for non-verified organizers
MODERATED_FIELDS = {
    "title",
    "short_description",
    "description",
    "image_url",
    "start_at",
    "end_at",
    "registration_deadline",
    "location_address",
    "latitude",
    "longitude",
    "category",
    "is_free",
    "ticket_tiers",
}


# ── Validation ────────────────────────────────────────────────

def validate_event_fields(
    is_free: bool,
    tiers: List[dict],
    start_at: datetime,
    end_at: Optional[datetime],
    registration_deadline: Optional[datetime],
) -> None:
    if end_at is not None and end_at < start_at:
        raise ValidationError("End date cannot be before the start date", field="end_at")
    if registration_deadline is not None and registration_deadline > start_at:
        raise ValidationError(
            "Registration deadline cannot be after the event starts",
            field="registration_deadline",
        )
    if is_free and tiers:
        raise ValidationError("Free events cannot have ticket tiers", field="ticket_tiers")
    if not is_free and not tiers:
        raise ValidationError("Paid events require at least one ticket tier", field="ticket_tiers")
    for i, tier in enumerate(tiers):
        if tier["price"] <= 0:
            raise ValidationError(
                "Ticket tier price must be greater than 0",
                field=f"ticket_tiers[{i}].price",
            )


def _initial_status(actor: User) -> ApprovalStatus:
    return ApprovalStatus.APPROVED if actor.is_verified_organizer else ApprovalStatus.PENDING


def _tier_key(tiers: List[dict]) -> list:
    return sorted((t["name"], t["price"], t.get("description") or "") for t in tiers)


# ── Reads ─────────────────────────────────────────────────────

async def get_visible_event(db: AsyncSession, actor: Optional[User], event_id: UUID) -> Event:
    """Approved events are public; anything else only to its organizer or an admin."""
    event = await EventStore(db).get_by_id(event_id)
    if event.approval_status != ApprovalStatus.APPROVED and not is_owner_or_admin(actor, event.organizer_id):
        raise NotFound("Event not found")
    return event


async def list_registrants(db: AsyncSession, actor: User, event_id: UUID) -> List[Registration]:
    event = await EventStore(db).get_by_id(event_id)
    authorize("events.registrations", actor, owner_id=event.organizer_id)
    return await RegistrationStore(db).list_by_event(event_id)


# ── Create / Update / Delete ──────────────────────────────────

async def create_event(db: AsyncSession, actor: User, data: EventCreateRequest) -> Event:
    authorize("events.create", actor)
    if data.organizer_id is not None and data.organizer_id != actor.id:
        raise Forbidden("You can only create events for yourself")

    tiers = [t.model_dump(exclude={"id"}) for t in data.ticket_tiers]
    validate_event_fields(
        data.is_free, tiers, data.start_at, data.end_at, data.registration_deadline
    )

    fields = data.model_dump(exclude={"ticket_tiers", "organizer_id"})
    fields["approval_status"] = _initial_status(actor)
    event = await EventStore(db).create(actor.id, fields, tiers)
    logger.info(f"Event {event.id} created by {actor.id} ({event.approval_status.value})")
    return event


async def update_event(
    db: AsyncSession,
    channel: DeliveryChannel,
    actor: User,
    event_id: UUID,
    data: EventUpdateRequest,
) -> Event:
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    authorize("events.update", actor, owner_id=event.organizer_id)

    patch = data.model_dump(exclude_unset=True)
    tiers_patch = patch.pop("ticket_tiers", None)
    if patch.get("is_free") is True and tiers_patch is None:
        tiers_patch = []
    for required in ("title", "description", "start_at", "location_address", "is_free", "category"):
        if required in patch and patch[required] is None:
            raise ValidationError(f"{required} cannot be null", field=required)

    current_tiers = [
        {"id": t.id, "name": t.name, "price": t.price, "description": t.description}
        for t in event.ticket_tiers
    ]
    merged_tiers = current_tiers if tiers_patch is None else tiers_patch
    merged = {
        "is_free": patch.get("is_free", event.is_free),
        "start_at": patch.get("start_at", event.start_at),
        "end_at": patch.get("end_at", event.end_at),
        "registration_deadline": patch.get("registration_deadline", event.registration_deadline),
    }
    validate_event_fields(
        merged["is_free"], merged_tiers,
        merged["start_at"], merged["end_at"], merged["registration_deadline"],
    )

    changes = {k: v for k, v in patch.items() if getattr(event, k) != v}
    tiers_changed = tiers_patch is not None and _tier_key(tiers_patch) != _tier_key(current_tiers)
    if not changes and not tiers_changed:
        return event

    start_changed = "start_at" in changes
    edited = set(changes) | ({"ticket_tiers"} if tiers_changed else set())
    # Admin edits leave the approval state alone
    if not actor.is_admin and edited & MODERATED_FIELDS:
        if actor.is_verified_organizer:
            changes["approval_status"] = ApprovalStatus.APPROVED
        else:
            changes["approval_status"] = ApprovalStatus.PENDING
            changes["rejection_reason"] = None

    await events.update(event, changes)
    if tiers_changed:
        await events.replace_tiers(event, tiers_patch)
    logger.info(f"Event {event.id} updated by {actor.id}: {sorted(changes)}")

    registrations = await RegistrationStore(db).list_by_event(event.id)
    if registrations:
        detail = "The date or time has changed." if start_changed else "Event details have changed."
        await notify(
            db, channel, NotificationTemplate.EVENT_UPDATED,
            [Recipient.from_registration(r) for r in registrations],
            EventSnapshot.from_event(event),
            detail=detail,
        )
        if start_changed:
            await reschedule_reminders(db, event, registrations)
    return event


async def delete_event(
    db: AsyncSession,
    channel: DeliveryChannel,
    actor: User,
    event_id: UUID,
) -> int:
    """Delete an event and tell every registrant. Returns the number notified."""
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    authorize("events.delete", actor, owner_id=event.organizer_id)

    # Snapshot before the cascade removes the registration rows
    registrants = [
        Recipient.from_registration(r)
        for r in await RegistrationStore(db).list_by_event(event.id)
    ]
    snapshot = EventSnapshot.from_event(event, keep_id=False)

    await discard_pending(db, event.id)
    await events.delete(event)
    logger.info(f"Event {event_id} deleted by {actor.id}; notifying {len(registrants)} registrants")

    await notify(db, channel, NotificationTemplate.EVENT_CANCELLED, registrants, snapshot)
    return len(registrants)


# ── Moderation ────────────────────────────────────────────────

async def _notify_organizer(
    db: AsyncSession,
    channel: DeliveryChannel,
    event: Event,
    template: NotificationTemplate,
    detail: Optional[str] = None,
) -> None:
    await notify(
        db, channel, template,
        [Recipient.from_user(event.organizer)],
        EventSnapshot.from_event(event),
        detail=detail,
    )


async def approve_event(db: AsyncSession, channel: DeliveryChannel, admin: User, event_id: UUID) -> Event:
    authorize("events.moderate", admin)
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    await events.update(event, {"approval_status": ApprovalStatus.APPROVED, "rejection_reason": None})
    await _notify_organizer(
        db, channel, event, NotificationTemplate.EVENT_UPDATED,
        "Your event has been approved and is now visible to the community.",
    )
    return event


async def reject_event(
    db: AsyncSession,
    channel: DeliveryChannel,
    admin: User,
    event_id: UUID,
    reason: Optional[str] = None,
) -> Event:
    authorize("events.moderate", admin)
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    await events.update(event, {"approval_status": ApprovalStatus.REJECTED, "rejection_reason": reason})
    detail = "Your event was not approved."
    if reason:
        detail = f"{detail} Reason: {reason}"
    await _notify_organizer(db, channel, event, NotificationTemplate.EVENT_UPDATED, detail)
    return event


async def flag_event(
    db: AsyncSession,
    channel: DeliveryChannel,
    admin: User,
    event_id: UUID,
    reason: str,
) -> Event:
    authorize("events.moderate", admin)
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    await events.update(event, {"is_flagged": True, "flag_reason": reason})
    await _notify_organizer(db, channel, event, NotificationTemplate.EVENT_FLAGGED, reason)
    return event


async def unflag_event(db: AsyncSession, channel: DeliveryChannel, admin: User, event_id: UUID) -> Event:
    authorize("events.moderate", admin)
    events = EventStore(db)
    event = await events.get_by_id(event_id)
    await events.update(event, {"is_flagged": False, "flag_reason": None})
    await _notify_organizer(db, channel, event, NotificationTemplate.EVENT_UNFLAGGED)
    return event


# ── Registration ──────────────────────────────────────────────

async def register_for_event(
    db: AsyncSession,
    channel: DeliveryChannel,
    actor: User,
    event_id: UUID,
    data: RegistrationRequest,
) -> Registration:
    authorize("registrations.create", actor)
    event = await EventStore(db).get_by_id(event_id)
    if event.approval_status != ApprovalStatus.APPROVED:
        raise NotFound("Event not found or not approved")
    if event.registration_deadline and event.registration_deadline < datetime.now(timezone.utc):
        raise RegistrationClosed()

    tier = None
    if data.ticket_tier_id is not None:
        tier = next((t for t in event.ticket_tiers if t.id == data.ticket_tier_id), None)
        if tier is None:
            raise ValidationError("Ticket tier does not belong to this event", field="ticket_tier_id")

    registration = await RegistrationStore(db).create(
        event,
        actor,
        name=data.name or actor.username,
        email=data.email or actor.email,
        phone=data.phone or actor.phone,
        additional_attendees=data.additional_attendees,
        tier=tier,
    )
    logger.info(f"User {actor.id} registered for event {event.id} (party of {registration.party_size})")

    recipient = Recipient.from_registration(registration)
    detail = f"Party size: {registration.party_size}."
    if tier is not None:
        detail += f" Ticket: {tier.name}."
    await notify(
        db, channel, NotificationTemplate.REGISTRATION_CONFIRMATION,
        [recipient], EventSnapshot.from_event(event), detail=detail,
    )
    await queue_reminder(db, event, recipient)
    return registration


async def cancel_registration(
    db: AsyncSession,
    channel: DeliveryChannel,
    actor: User,
    event_id: UUID,
    user_id: Optional[UUID] = None,
) -> None:
    """Registrants cancel their own sign-up; admins may name any user."""
    authorize("registrations.cancel", actor)
    target_id = user_id or actor.id
    if target_id != actor.id:
        authorize("registrations.cancel_other", actor)

    event = await EventStore(db).get_by_id(event_id)
    registrations = RegistrationStore(db)
    registration = await registrations.get_or_raise(event.id, target_id)
    recipient = Recipient.from_registration(registration)

    await registrations.cancel(registration)
    await discard_pending(db, event.id, user_id=target_id, notification_type=NotificationType.REMINDER)
    logger.info(f"Registration of user {target_id} for event {event.id} cancelled by {actor.id}")

    await notify(
        db, channel, NotificationTemplate.REGISTRATION_CANCELLED,
        [recipient], EventSnapshot.from_event(event),
    )
