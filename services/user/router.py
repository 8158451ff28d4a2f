"""
services/user/router.py
Self-service views: own profile, own events (all approval states), own registrations.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.event.store import EventFilters, EventStore
from services.registration.store import RegistrationStore
from shared.middleware.auth import AccessRequired
from shared.models.models import User
from shared.schemas.schemas import EventResponse, RegistrationResponse, UserResponse

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(AccessRequired("auth.me"))):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.get("/me/events")
async def get_my_events(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(AccessRequired("events.mine")),
    db: AsyncSession = Depends(get_db),
):
    """Events organized by the current user, newest first, whatever their approval state."""
    events, total = await EventStore(db).list(
        EventFilters(organizer_id=current_user.id),
        page=page,
        page_size=page_size,
        newest_first=True,
    )
    return {
        "items": [EventResponse.from_event(e) for e in events],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }


@router.get("/me/registrations", response_model=list[RegistrationResponse])
async def get_my_registrations(
    current_user: User = Depends(AccessRequired("registrations.mine")),
    db: AsyncSession = Depends(get_db),
):
    rows = await RegistrationStore(db).list_by_user(current_user.id)
    items = []
    for registration, event in rows:
        item = RegistrationResponse.model_validate(registration)
        item.event_title = event.title
        item.event_start_at = event.start_at
        items.append(item)
    return items
