"""
services/admin/router.py
Admin-only endpoints: event moderation queue, user moderation,
platform analytics, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.event import lifecycle
from services.event.store import EventFilters, EventStore
from services.notification.delivery import DeliveryChannel, get_delivery_channel
from services.notification.fanout import Recipient, notify
from services.user.store import UserStore
from shared.middleware.auth import AccessRequired
from shared.models.models import (
    AdminAuditLog,
    ApprovalStatus,
    Event,
    Notification,
    NotificationTemplate,
    Registration,
    User,
)
from shared.schemas.schemas import (
    AdminAnalyticsResponse,
    AdminBanRequest,
    AdminFlagEventRequest,
    AdminRejectEventRequest,
    AdminUserResponse,
    EventResponse,
)
from shared.utils.exceptions import Conflict, Forbidden

router = APIRouter(prefix="/admin", tags=["Admin"])

moderate_events = AccessRequired("events.moderate")
moderate_users = AccessRequired("users.moderate")


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


def _page(items: list, total: int, page: int, page_size: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


# ── Event Moderation Queue ─────────────────────────────────────────────────────

@router.get("/events/pending")
async def get_pending_events(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
):
    """Events awaiting approval, oldest submission first."""
    query = (
        select(Event)
        .where(Event.approval_status == ApprovalStatus.PENDING)
        .order_by(Event.created_at.asc())
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    return _page([EventResponse.from_event(e) for e in result.scalars()], total or 0, page, page_size)


@router.get("/events")
async def list_all_events(
    approval_status: Optional[ApprovalStatus] = Query(None, alias="status"),
    flagged: Optional[bool] = Query(None),
    q: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
):
    """Every event regardless of state, newest first."""
    events, total = await EventStore(db).list(
        EventFilters(approval_status=approval_status, is_flagged=flagged, search=q),
        page=page,
        page_size=page_size,
        newest_first=True,
    )
    return _page([EventResponse.from_event(e) for e in events], total, page, page_size)


@router.post("/events/{event_id}/approve", response_model=EventResponse)
async def approve_event(
    event_id: UUID,
    request: Request,
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Publish an event. The organizer is notified; registrants are not."""
    event = await lifecycle.approve_event(db, channel, current_user, event_id)
    await _log(db, current_user, "APPROVE_EVENT", "Event", str(event_id), None, request)
    await db.commit()
    return EventResponse.from_event(event)


@router.post("/events/{event_id}/reject", response_model=EventResponse)
async def reject_event(
    event_id: UUID,
    data: AdminRejectEventRequest,
    request: Request,
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    event = await lifecycle.reject_event(db, channel, current_user, event_id, data.reason)
    await _log(db, current_user, "REJECT_EVENT", "Event", str(event_id), {"reason": data.reason}, request)
    await db.commit()
    return EventResponse.from_event(event)


@router.post("/events/{event_id}/flag", response_model=EventResponse)
async def flag_event(
    event_id: UUID,
    data: AdminFlagEventRequest,
    request: Request,
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Mark an event for moderation. It stays publicly listed."""
    event = await lifecycle.flag_event(db, channel, current_user, event_id, data.reason)
    await _log(db, current_user, "FLAG_EVENT", "Event", str(event_id), {"reason": data.reason}, request)
    await db.commit()
    return EventResponse.from_event(event)


@router.post("/events/{event_id}/unflag", response_model=EventResponse)
async def unflag_event(
    event_id: UUID,
    request: Request,
    current_user: User = Depends(moderate_events),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    event = await lifecycle.unflag_event(db, channel, current_user, event_id)
    await _log(db, current_user, "UNFLAG_EVENT", "Event", str(event_id), None, request)
    await db.commit()
    return EventResponse.from_event(event)


# ── User Moderation ────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    search: Optional[str] = Query(None, max_length=100),
    banned: Optional[bool] = Query(None),
    verified: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(AccessRequired("users.list")),
    db: AsyncSession = Depends(get_db),
):
    users, total = await UserStore(db).list(
        search=search,
        is_banned=banned,
        is_verified_organizer=verified,
        page=page,
        page_size=page_size,
    )
    return _page([AdminUserResponse.model_validate(u) for u in users], total, page, page_size)


@router.get("/users/{user_id}")
async def get_user_detail(
    user_id: UUID,
    current_user: User = Depends(AccessRequired("users.list")),
    db: AsyncSession = Depends(get_db),
):
    """Account details plus the events this user organizes."""
    user = await UserStore(db).get_by_id(user_id)
    events, _ = await EventStore(db).list(
        EventFilters(organizer_id=user.id), page=1, page_size=100, newest_first=True
    )
    registration_count = await db.scalar(
        select(func.count(Registration.id)).where(Registration.user_id == user.id)
    )
    return {
        "user": AdminUserResponse.model_validate(user),
        "events": [EventResponse.from_event(e) for e in events],
        "registration_count": registration_count or 0,
    }


async def _moderate_user(
    db: AsyncSession,
    channel: DeliveryChannel,
    admin: User,
    user_id: UUID,
    request: Request,
    action: str,
    template: NotificationTemplate,
    reason: Optional[str] = None,
) -> User:
    users = UserStore(db)
    user = await users.get_by_id(user_id)

    if action == "VERIFY_ORGANIZER":
        if user.is_verified_organizer:
            raise Conflict("User is already a verified organizer")
        await users.set_verified(user, True)
    elif action == "UNVERIFY_ORGANIZER":
        if not user.is_verified_organizer:
            raise Conflict("User is not a verified organizer")
        await users.set_verified(user, False)
    elif action == "BAN_USER":
        if user.id == admin.id:
            raise Forbidden("Admins cannot ban themselves")
        if user.is_banned:
            raise Conflict("User is already banned")
        await users.ban(user, reason)
    elif action == "UNBAN_USER":
        if not user.is_banned:
            raise Conflict("User is not banned")
        await users.unban(user)

    await notify(db, channel, template, [Recipient.from_user(user)], detail=reason)
    await _log(db, admin, action, "User", str(user_id), {"reason": reason} if reason else None, request)
    await db.commit()
    return user


@router.post("/users/{user_id}/verify", response_model=AdminUserResponse)
async def verify_organizer(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(moderate_users),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Mark a user as a verified organizer: their future events auto-approve."""
    user = await _moderate_user(
        db, channel, current_user, user_id, request,
        "VERIFY_ORGANIZER", NotificationTemplate.ORGANIZER_VERIFIED,
    )
    return AdminUserResponse.model_validate(user)


@router.post("/users/{user_id}/unverify", response_model=AdminUserResponse)
async def unverify_organizer(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(moderate_users),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    user = await _moderate_user(
        db, channel, current_user, user_id, request,
        "UNVERIFY_ORGANIZER", NotificationTemplate.ORGANIZER_UNVERIFIED,
    )
    return AdminUserResponse.model_validate(user)


@router.post("/users/{user_id}/ban", response_model=AdminUserResponse)
async def ban_user(
    user_id: UUID,
    data: AdminBanRequest,
    request: Request,
    current_user: User = Depends(moderate_users),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    """Ban a user. Their login and any token they hold are refused with this reason."""
    user = await _moderate_user(
        db, channel, current_user, user_id, request,
        "BAN_USER", NotificationTemplate.ACCOUNT_BANNED, data.reason,
    )
    return AdminUserResponse.model_validate(user)


@router.post("/users/{user_id}/unban", response_model=AdminUserResponse)
async def unban_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(moderate_users),
    db: AsyncSession = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
):
    user = await _moderate_user(
        db, channel, current_user, user_id, request,
        "UNBAN_USER", NotificationTemplate.ACCOUNT_UNBANNED,
    )
    return AdminUserResponse.model_validate(user)


# ── Analytics ──────────────────────────────────────────────────────────────────

@router.get("/analytics", response_model=AdminAnalyticsResponse)
async def get_analytics(
    current_user: User = Depends(AccessRequired("admin.analytics")),
    db: AsyncSession = Depends(get_db),
):
    async def count(model, *where) -> int:
        return await db.scalar(select(func.count(model.id)).where(*where)) or 0

    return AdminAnalyticsResponse(
        total_users=await count(User),
        verified_organizers=await count(User, User.is_verified_organizer == True),  # noqa: E712
        banned_users=await count(User, User.is_banned == True),  # noqa: E712
        total_events=await count(Event),
        pending_events=await count(Event, Event.approval_status == ApprovalStatus.PENDING),
        approved_events=await count(Event, Event.approval_status == ApprovalStatus.APPROVED),
        rejected_events=await count(Event, Event.approval_status == ApprovalStatus.REJECTED),
        flagged_events=await count(Event, Event.is_flagged == True),  # noqa: E712
        total_registrations=await count(Registration),
        notifications_sent=await count(
            Notification, Notification.sent_at.is_not(None), Notification.is_success == True  # noqa: E712
        ),
        notifications_failed=await count(
            Notification, Notification.sent_at.is_not(None), Notification.is_success == False  # noqa: E712
        ),
    )


# ── Audit Log ──────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(AccessRequired("admin.audit_log")),
    db: AsyncSession = Depends(get_db),
):
    """Read-only view of admin actions, newest first."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc())
    if action:
        query = query.where(AdminAuditLog.action == action)
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = [
        {
            "id": str(log.id),
            "admin_id": str(log.admin_id),
            "action": log.action,
            "entity_type": log.entity_type,
            "entity_id": log.entity_id,
            "payload": log.payload,
            "ip_address": log.ip_address,
            "created_at": log.created_at.isoformat(),
        }
        for log in result.scalars()
    ]
    return _page(items, total or 0, page, page_size)
