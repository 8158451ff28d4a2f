"""
shared/middleware/auth.py
Access control gate: JWT authentication plus a single table classifying
every operation as public, authenticated, owner-or-admin, or admin-only.

Routers declare `Depends(AccessRequired("<operation>"))`; the lifecycle
controller re-checks ownership with `authorize()` once the resource is loaded.
"""

from enum import Enum
from typing import Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User
from shared.utils.exceptions import BannedAccount, Forbidden, Unauthorized
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class Access(str, Enum):
    PUBLIC = "public"
    AUTHENTICATED = "authenticated"
    OWNER_OR_ADMIN = "owner_or_admin"
    ADMIN_ONLY = "admin_only"


OPERATION_ACCESS: dict[str, Access] = {
    # Accounts
    "auth.register": Access.PUBLIC,
    "auth.login": Access.PUBLIC,
    "auth.logout": Access.AUTHENTICATED,
    "auth.me": Access.AUTHENTICATED,
    # Events
    "events.list": Access.PUBLIC,
    "events.get": Access.PUBLIC,
    "events.create": Access.AUTHENTICATED,
    "events.mine": Access.AUTHENTICATED,
    "events.update": Access.OWNER_OR_ADMIN,
    "events.delete": Access.OWNER_OR_ADMIN,
    "events.registrations": Access.OWNER_OR_ADMIN,
    # Registrations
    "registrations.create": Access.AUTHENTICATED,
    "registrations.cancel": Access.AUTHENTICATED,
    "registrations.cancel_other": Access.ADMIN_ONLY,
    "registrations.mine": Access.AUTHENTICATED,
    # Notifications
    "notifications.inbox": Access.AUTHENTICATED,
    "notifications.broadcast": Access.ADMIN_ONLY,
    "notifications.run_jobs": Access.ADMIN_ONLY,
    # Moderation
    "events.moderate": Access.ADMIN_ONLY,
    "users.list": Access.ADMIN_ONLY,
    "users.moderate": Access.ADMIN_ONLY,
    "admin.analytics": Access.ADMIN_ONLY,
    "admin.audit_log": Access.ADMIN_ONLY,
}


class TokenData:
    def __init__(self, payload: dict):
        self.user_id: str = payload["sub"]
        self.username: str = payload.get("username", "")
        self.is_admin: bool = bool(payload.get("admin", False))
        self.jti: str = payload["jti"]
        self.payload = payload


# ── Gate ──────────────────────────────────────────────────────

def authenticate_for(operation: str, actor: Optional[User]) -> None:
    """
    Identity/role half of the gate. Runs before the resource is loaded,
    so owner-or-admin operations only require a valid identity here.
    """
    access = OPERATION_ACCESS[operation]
    if access is Access.PUBLIC:
        return
    if actor is None:
        raise Unauthorized("Authentication required")
    if access is Access.ADMIN_ONLY and not actor.is_admin:
        raise Forbidden("Admin access required")


def authorize(operation: str, actor: Optional[User], owner_id: Optional[UUID] = None) -> None:
    """Full check, including ownership for owner-or-admin operations."""
    authenticate_for(operation, actor)
    if OPERATION_ACCESS[operation] is not Access.OWNER_OR_ADMIN:
        return
    if actor.is_admin or (owner_id is not None and actor.id == owner_id):
        return
    raise Forbidden("Only the organizer or an admin can perform this action")


def is_owner_or_admin(actor: Optional[User], owner_id: UUID) -> bool:
    return actor is not None and (actor.is_admin or actor.id == owner_id)


# ── Authentication dependencies ───────────────────────────────

async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> TokenData:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise Unauthorized("Authentication required")

    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        raise Unauthorized("Invalid or expired token")

    jti = payload.get("jti")
    if not jti or await RedisCache(redis).is_token_revoked(jti):
        raise Unauthorized("Token has been revoked")

    return TokenData(payload)


async def _load_user(db: AsyncSession, user_id: str) -> Optional[User]:
    try:
        uid = UUID(user_id)
    except ValueError:
        return None
    result = await db.execute(select(User).where(User.id == uid))
    return result.scalar_one_or_none()


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User from the JWT sub claim. Banned accounts are rejected here, not per operation."""
    user = await _load_user(db, token_data.user_id)
    if not user:
        raise Unauthorized("User not found")
    if user.is_banned:
        raise BannedAccount(user.ban_reason)
    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> Optional[User]:
    """Returns current user if authenticated, None otherwise. For public endpoints."""
    if not credentials:
        return None
    try:
        payload = verify_access_token(credentials.credentials)
    except JWTError:
        return None
    jti = payload.get("jti")
    if not jti or await RedisCache(redis).is_token_revoked(jti):
        return None
    user = await _load_user(db, payload["sub"])
    if user and user.is_banned:
        raise BannedAccount(user.ban_reason)
    return user


class AccessRequired:
    """Dependency factory applying the gate for one named operation."""

    def __init__(self, operation: str):
        if operation not in OPERATION_ACCESS:
            raise KeyError(f"Unclassified operation: {operation}")
        self.operation = operation

    async def __call__(
        self,
        current_user: Optional[User] = Depends(get_optional_user),
    ) -> Optional[User]:
        authenticate_for(self.operation, current_user)
        return current_user

