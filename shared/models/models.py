"""
shared/models/models.py
All SQLAlchemy ORM models for the Community Pulse platform.
UUID primary keys throughout, timezone-aware UTC timestamps.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC value (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# ── Enumerations ──────────────────────────────────────────────

class ApprovalStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class EventCategory(str, PyEnum):
    GARAGE_SALE = "GARAGE_SALE"
    SPORTS = "SPORTS"
    MATCHES = "MATCHES"
    COMMUNITY_CLASS = "COMMUNITY_CLASS"
    VOLUNTEER = "VOLUNTEER"             # Volunteer opportunities
    EXHIBITION = "EXHIBITION"
    FESTIVAL = "FESTIVAL"
    OTHER = "OTHER"


class NotificationType(str, PyEnum):
    REMINDER = "REMINDER"
    UPDATE = "UPDATE"
    CANCELLATION = "CANCELLATION"


class NotificationTemplate(str, PyEnum):
    EVENT_REMINDER = "EVENT_REMINDER"
    EVENT_UPDATED = "EVENT_UPDATED"
    EVENT_CANCELLED = "EVENT_CANCELLED"
    REGISTRATION_CONFIRMATION = "REGISTRATION_CONFIRMATION"
    REGISTRATION_CANCELLED = "REGISTRATION_CANCELLED"
    EVENT_FLAGGED = "EVENT_FLAGGED"
    EVENT_UNFLAGGED = "EVENT_UNFLAGGED"
    ORGANIZER_VERIFIED = "ORGANIZER_VERIFIED"
    ORGANIZER_UNVERIFIED = "ORGANIZER_UNVERIFIED"
    ACCOUNT_BANNED = "ACCOUNT_BANNED"
    ACCOUNT_UNBANNED = "ACCOUNT_UNBANNED"


class DeliveryChannelType(str, PyEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account with role flags. Admin actions are the only writers of the flags."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_verified_organizer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ban_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    banned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    events: Mapped[List["Event"]] = relationship(back_populates="organizer")


class Event(TimestampMixin, Base):
    """A community event. Visible to the public only once APPROVED."""
    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organizer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    short_description: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    registration_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    location_address: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    category: Mapped[EventCategory] = mapped_column(
        Enum(EventCategory), default=EventCategory.OTHER, nullable=False
    )
    is_free: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Moderation
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus), default=ApprovalStatus.PENDING, nullable=False
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    organizer: Mapped["User"] = relationship(back_populates="events", lazy="selectin")
    ticket_tiers: Mapped[List["TicketTier"]] = relationship(
        back_populates="event",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TicketTier.price",
    )
    registrations: Mapped[List["Registration"]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_events_approval_start", "approval_status", "start_at"),
        Index("ix_events_organizer_id", "organizer_id"),
        Index("ix_events_category", "category"),
    )

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED


class TicketTier(Base):
    """Named price point for a paid event. Price is in integer minor units (cents)."""
    __tablename__ = "ticket_tiers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    event: Mapped["Event"] = relationship(back_populates="ticket_tiers")

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_ticket_tier_price_positive"),
    )


class Registration(Base):
    """
    Attendee sign-up. Contact details and the chosen tier are snapshotted
    so later profile or tier edits never rewrite history.
    """
    __tablename__ = "registrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    additional_attendees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ticket_tier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("ticket_tiers.id", ondelete="SET NULL"), nullable=True
    )
    ticket_tier_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ticket_price: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    event: Mapped["Event"] = relationship(back_populates="registrations")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_registration_event_user"),
        CheckConstraint("additional_attendees >= 0", name="ck_registration_attendees"),
        Index("ix_registrations_user_id", "user_id"),
    )

    @property
    def party_size(self) -> int:
        return 1 + (self.additional_attendees or 0)


class Notification(Base):
    """
    One delivery attempt to one recipient. Also serves as the in-app inbox.
    Queued reminders carry scheduled_for and have sent_at NULL until dispatched.
    """
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # NULL once the event is deleted; event_title keeps the context
    event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    event_title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    type: Mapped[NotificationType] = mapped_column(Enum(NotificationType), nullable=False)
    template: Mapped[NotificationTemplate] = mapped_column(
        Enum(NotificationTemplate), nullable=False
    )
    channel: Mapped[DeliveryChannelType] = mapped_column(
        Enum(DeliveryChannelType), default=DeliveryChannelType.EMAIL, nullable=False
    )
    recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    is_success: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notifications_user_id_read", "user_id", "is_read"),
        Index("ix_notifications_pending", "sent_at", "scheduled_for"),
        # At most one reminder per (user, event)
        Index(
            "uq_notifications_reminder_user_event",
            "user_id",
            "event_id",
            unique=True,
            postgresql_where=text("type = 'REMINDER'"),
            sqlite_where=text("type = 'REMINDER'"),
        ),
    )


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
