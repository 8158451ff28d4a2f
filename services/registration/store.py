"""
services/registration/store.py
Registration Store: attendee sign-ups keyed by (event, user).
"""

from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Event, Registration, TicketTier, User
from shared.utils.exceptions import AlreadyRegistered, RegistrationNotFound


class RegistrationStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, event_id: UUID, user_id: UUID) -> Optional[Registration]:
        result = await self.db.execute(
            select(Registration).where(
                Registration.event_id == event_id,
                Registration.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_or_raise(self, event_id: UUID, user_id: UUID) -> Registration:
        registration = await self.get(event_id, user_id)
        if not registration:
            raise RegistrationNotFound()
        return registration

    async def create(
        self,
        event: Event,
        user: User,
        name: str,
        email: str,
        phone: Optional[str],
        additional_attendees: int = 0,
        tier: Optional[TicketTier] = None,
    ) -> Registration:
        """Insert a sign-up, snapshotting contact details and the tier's name/price."""
        if await self.get(event.id, user.id):
            raise AlreadyRegistered()

        registration = Registration(
            event_id=event.id,
            user_id=user.id,
            name=name,
            email=email,
            phone=phone,
            additional_attendees=additional_attendees,
            ticket_tier_id=tier.id if tier else None,
            ticket_tier_name=tier.name if tier else None,
            ticket_price=tier.price if tier else None,
        )
        self.db.add(registration)
        try:
            await self.db.flush()
        except IntegrityError:
            # uq_registration_event_user caught a concurrent duplicate
            await self.db.rollback()
            raise AlreadyRegistered()
        return registration

    async def list_by_event(self, event_id: UUID) -> List[Registration]:
        result = await self.db.execute(
            select(Registration)
            .where(Registration.event_id == event_id)
            .order_by(Registration.created_at.asc())
        )
        return list(result.scalars())

    async def list_by_user(self, user_id: UUID) -> List[Tuple[Registration, Event]]:
        result = await self.db.execute(
            select(Registration, Event)
            .join(Event, Event.id == Registration.event_id)
            .where(Registration.user_id == user_id)
            .order_by(Event.start_at.asc())
        )
        return [(row[0], row[1]) for row in result.all()]

    async def cancel(self, registration: Registration) -> None:
        await self.db.delete(registration)
        await self.db.flush()
