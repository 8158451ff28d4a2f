"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import (
    ApprovalStatus,
    DeliveryChannelType,
    EventCategory,
    NotificationTemplate,
    NotificationType,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive datetimes from clients are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_.-]+$")
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    phone: Optional[str] = Field(None, pattern=r"^\+?[1-9]\d{6,14}$")


class LoginRequest(BaseSchema):
    username: str = Field(..., description="Username or email address")
    password: str


class UserResponse(BaseSchema):
    id: uuid.UUID
    username: str
    email: EmailStr
    phone: Optional[str]
    is_admin: bool
    is_verified_organizer: bool
    is_banned: bool
    created_at: datetime


class AdminUserResponse(UserResponse):
    ban_reason: Optional[str]
    banned_at: Optional[datetime]


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


# ── Events ────────────────────────────────────────────────────

class TicketTierInput(BaseSchema):
    id: Optional[uuid.UUID] = None
    name: str = Field(..., min_length=1, max_length=100)
    price: int = Field(..., description="Price in minor units (cents)")
    description: Optional[str] = None


class TicketTierResponse(BaseSchema):
    id: uuid.UUID
    name: str
    price: int
    description: Optional[str]


class EventCreateRequest(BaseSchema):
    title: str = Field(..., min_length=3, max_length=200)
    short_description: Optional[str] = Field(None, max_length=300)
    description: str = Field(..., min_length=1)
    image_url: Optional[str] = Field(None, max_length=500)
    start_at: datetime
    end_at: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    location_address: str = Field(..., min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    category: EventCategory = EventCategory.OTHER
    is_free: bool = True
    ticket_tiers: List[TicketTierInput] = Field(default_factory=list)
    organizer_id: Optional[uuid.UUID] = None

    @field_validator("start_at", "end_at", "registration_deadline")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class EventUpdateRequest(BaseSchema):
    """Partial patch; only fields present in the body are applied."""
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    short_description: Optional[str] = Field(None, max_length=300)
    description: Optional[str] = Field(None, min_length=1)
    image_url: Optional[str] = Field(None, max_length=500)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    registration_deadline: Optional[datetime] = None
    location_address: Optional[str] = Field(None, min_length=1)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    category: Optional[EventCategory] = None
    is_free: Optional[bool] = None
    ticket_tiers: Optional[List[TicketTierInput]] = None

    @field_validator("start_at", "end_at", "registration_deadline")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class EventResponse(BaseSchema):
    id: uuid.UUID
    organizer_id: uuid.UUID
    organizer_name: Optional[str] = None
    title: str
    short_description: Optional[str]
    description: str
    image_url: Optional[str]
    start_at: datetime
    end_at: Optional[datetime]
    registration_deadline: Optional[datetime]
    location_address: str
    latitude: Optional[float]
    longitude: Optional[float]
    category: EventCategory
    is_free: bool
    ticket_tiers: List[TicketTierResponse] = []
    approval_status: ApprovalStatus
    is_approved: bool
    rejection_reason: Optional[str]
    is_flagged: bool
    flag_reason: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_event(cls, event) -> "EventResponse":
        data = cls.model_validate(event)
        if event.organizer is not None:
            data.organizer_name = event.organizer.username
        return data


# ── Registrations ─────────────────────────────────────────────

class RegistrationRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    additional_attendees: int = Field(0, ge=0, le=50)
    ticket_tier_id: Optional[uuid.UUID] = None


class RegistrationResponse(BaseSchema):
    id: uuid.UUID
    event_id: uuid.UUID
    user_id: uuid.UUID
    name: str
    email: str
    phone: Optional[str]
    additional_attendees: int
    party_size: int
    ticket_tier_id: Optional[uuid.UUID]
    ticket_tier_name: Optional[str]
    ticket_price: Optional[int]
    created_at: datetime
    event_title: Optional[str] = None
    event_start_at: Optional[datetime] = None


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    event_id: Optional[uuid.UUID]
    event_title: Optional[str]
    type: NotificationType
    template: NotificationTemplate
    channel: DeliveryChannelType
    subject: str
    body: str
    scheduled_for: Optional[datetime]
    sent_at: Optional[datetime]
    is_success: bool
    error_message: Optional[str]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class BroadcastRequest(BaseSchema):
    message: str = Field(..., min_length=1, max_length=2000)
    channel: DeliveryChannelType = DeliveryChannelType.EMAIL


class JobResultResponse(BaseSchema):
    job: str
    skipped: bool = False
    result: dict = {}


# ── Admin ─────────────────────────────────────────────────────

class AdminRejectEventRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AdminFlagEventRequest(BaseSchema):
    reason: str = Field(..., min_length=3, max_length=500)


class AdminBanRequest(BaseSchema):
    reason: str = Field(..., min_length=2, max_length=500)


class AdminAnalyticsResponse(BaseSchema):
    total_users: int
    verified_organizers: int
    banned_users: int
    total_events: int
    pending_events: int
    approved_events: int
    rejected_events: int
    flagged_events: int
    total_registrations: int
    notifications_sent: int
    notifications_failed: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
