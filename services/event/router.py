"""
services/event/router.py
Public event discovery, organizer event management, and attendee registration.

Browsing only ever shows APPROVED events. Flagged events stay listed
until a moderator rejects or removes them.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.event import lifecycle
from services.event.store import EventFilters, EventStore
from services.notification.delivery import DeliveryChannel, get_delivery_channel
from services.registration.store import RegistrationStore
from shared.middleware.auth import AccessRequired
from shared.models.models import ApprovalStatus, EventCategory, User
from shared.schemas.schemas import (
    EventCreateRequest,
    EventResponse,
    EventUpdateRequest,
    MessageResponse,
    RegistrationRequest,
    RegistrationResponse,
)

router = APIRouter(prefix="/events", tags=["Events"])


@router.get("")
async def list_events(
    q: Optional[str] = Query(None, max_length=100, description="Search title, description, location, category"),
    category: Optional[EventCategory] = Query(None),
    start_from: Optional[datetime] = Query(None),
    start_to: Optional[datetime] = Query(None),
    upcoming: bool = Query(True),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: Optional[User] = Depends(AccessRequired("events.list")),
    db: AsyncSession = Depends(get_db),
):
    """Browse approved events, soonest first."""
    filters = EventFilters(
        approval_status=ApprovalStatus.APPROVED,
        search=q,
        category=category,
        start_from=start_from,
        start_to=start_to,
        upcoming=upcoming,
    )
    events, total = await EventStore(db).list(filters, page=page, page_size=page_size)
    return {
        "items": [EventResponse.from_event(e) for e in events],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    data: EventCreateRequest,
    current_user: User = Depends(AccessRequired("events.create")),
    db: AsyncSession = Depends(get_db),
):
    """
    Create an event owned by the caller.
    Verified organizers publish immediately; everyone else waits for admin approval.
    """
    event = await lifecycle.create_event(db, current_user, data)
    await db.commit()
    return EventResponse.from_event(event)


@router.get("/{event_id}", response_model=EventResponse)
async def get_event(
    event_id: UUID,
    current_user: Optional[User] = Depends(AccessRequired("events.get")),
    db: AsyncSession = Depends(get_db),
):
    event = await lifecycle.get_visible_event(db, current_user, event_id)
    return EventResponse.from_event(event)


@router.patch("/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: UUID,
    data: EventUpdateRequest,
    current_user: User = Depends(AccessRequired("events.update")),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Partial update. Registrants are told about the change; edits may send the event back to review."""
    event = await lifecycle.update_event(db, channel, current_user, event_id, data)
    await db.commit()
    return EventResponse.from_event(event)


@router.delete("/{event_id}", response_model=MessageResponse)
async def delete_event(
    event_id: UUID,
    current_user: User = Depends(AccessRequired("events.delete")),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    notified = await lifecycle.delete_event(db, channel, current_user, event_id)
    await db.commit()
    return MessageResponse(message=f"Event deleted; {notified} registrant(s) notified")


# ── Registration ──────────────────────────────────────────────

@router.post(
    "/{event_id}/register",
    response_model=RegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_for_event(
    event_id: UUID,
    data: RegistrationRequest,
    current_user: User = Depends(AccessRequired("registrations.create")),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    registration = await lifecycle.register_for_event(db, channel, current_user, event_id, data)
    await db.commit()
    return RegistrationResponse.model_validate(registration)


@router.delete("/{event_id}/register", response_model=MessageResponse)
async def cancel_registration(
    event_id: UUID,
    user_id: Optional[UUID] = Query(None, description="Admins only: cancel another user's registration"),
    current_user: User = Depends(AccessRequired("registrations.cancel")),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    await lifecycle.cancel_registration(db, channel, current_user, event_id, user_id)
    await db.commit()
    return MessageResponse(message="Registration cancelled")


@router.get("/{event_id}/registration")
async def get_my_registration(
    event_id: UUID,
    current_user: User = Depends(AccessRequired("registrations.mine")),
    db: AsyncSession = Depends(get_db),
):
    """Whether the caller is registered for this event, with the registration if so."""
    registration = await RegistrationStore(db).get(event_id, current_user.id)
    return {
        "registered": registration is not None,
        "registration": RegistrationResponse.model_validate(registration) if registration else None,
    }


@router.get("/{event_id}/registrations", response_model=list[RegistrationResponse])
async def list_event_registrations(
    event_id: UUID,
    current_user: User = Depends(AccessRequired("events.registrations")),
    db: AsyncSession = Depends(get_db),
):
    """Attendee list for the organizer (or an admin)."""
    registrations = await lifecycle.list_registrants(db, current_user, event_id)
    return [RegistrationResponse.model_validate(r) for r in registrations]
