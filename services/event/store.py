"""
services/event/store.py
Event Store: events and their ticket tiers.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ApprovalStatus, Event, EventCategory, TicketTier
from shared.utils.exceptions import NotFound


@dataclass
class EventFilters:
    approval_status: Optional[ApprovalStatus] = None
    organizer_id: Optional[UUID] = None
    search: Optional[str] = None
    category: Optional[EventCategory] = None
    start_from: Optional[datetime] = None
    start_to: Optional[datetime] = None
    upcoming: bool = False
    is_flagged: Optional[bool] = None


class EventStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, organizer_id: UUID, fields: dict, tiers: List[dict]) -> Event:
        event = Event(organizer_id=organizer_id, **fields)
        event.ticket_tiers = [TicketTier(**tier) for tier in tiers]
        self.db.add(event)
        await self.db.flush()
        await self.db.refresh(event, attribute_names=["organizer", "ticket_tiers"])
        return event

    async def get_by_id(self, event_id: UUID) -> Event:
        result = await self.db.execute(select(Event).where(Event.id == event_id))
        event = result.scalar_one_or_none()
        if not event:
            raise NotFound("Event not found")
        return event

    async def list(
        self,
        filters: EventFilters,
        page: int = 1,
        page_size: int = 20,
        newest_first: bool = False,
    ) -> tuple[List[Event], int]:
        query = select(Event)

        if filters.approval_status is not None:
            query = query.where(Event.approval_status == filters.approval_status)
        if filters.organizer_id is not None:
            query = query.where(Event.organizer_id == filters.organizer_id)
        if filters.category is not None:
            query = query.where(Event.category == filters.category)
        if filters.is_flagged is not None:
            query = query.where(Event.is_flagged == filters.is_flagged)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.where(
                or_(
                    Event.title.ilike(pattern),
                    Event.description.ilike(pattern),
                    Event.short_description.ilike(pattern),
                    Event.location_address.ilike(pattern),
                    cast(Event.category, String).ilike(pattern),
                )
            )
        if filters.start_from is not None:
            query = query.where(Event.start_at >= filters.start_from)
        if filters.start_to is not None:
            query = query.where(Event.start_at < filters.start_to)
        if filters.upcoming:
            query = query.where(Event.start_at >= datetime.now(timezone.utc))

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        order = Event.created_at.desc() if newest_first else Event.start_at.asc()
        result = await self.db.execute(
            query.order_by(order).offset((page - 1) * page_size).limit(page_size)
        )
        return list(result.scalars()), total or 0

    async def update(self, event: Event, changes: dict) -> Event:
        """Apply a partial patch of plain column values."""
        for field, value in changes.items():
            setattr(event, field, value)
        await self.db.flush()
        return event

    async def replace_tiers(self, event: Event, tiers: List[dict]) -> None:
        """
        Tiers carrying a known id are updated in place, new ones created,
        omitted ones deleted. Registrations keep their tier snapshot.
        """
        existing = {tier.id: tier for tier in event.ticket_tiers}
        kept = []
        for data in tiers:
            tier = existing.get(data.get("id")) if data.get("id") else None
            if tier is None:
                tier = TicketTier(**{k: v for k, v in data.items() if k != "id"})
            else:
                tier.name = data["name"]
                tier.price = data["price"]
                tier.description = data.get("description")
            kept.append(tier)
        event.ticket_tiers = kept
        await self.db.flush()

    async def delete(self, event: Event) -> None:
        """Delete the event; ticket tiers and registrations cascade."""
        await self.db.delete(event)
        await self.db.flush()
