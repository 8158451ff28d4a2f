"""
services/user/store.py
User Store: account creation, credential checks, lookups and role-flag mutations.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import User
from shared.utils.exceptions import BannedAccount, Conflict, NotFound, Unauthorized
from shared.utils.security import hash_password, verify_password

logger = logging.getLogger(__name__)


class UserStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        username: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
    ) -> User:
        """Create an account. Username and email must both be unused (case-insensitive)."""
        email = email.lower()
        result = await self.db.execute(
            select(User).where(
                or_(func.lower(User.username) == username.lower(), User.email == email)
            )
        )
        existing = result.scalars().first()
        if existing:
            if existing.email == email:
                raise Conflict("Email already registered")
            raise Conflict("Username already taken")

        user = User(
            username=username,
            email=email,
            phone=phone,
            hashed_password=hash_password(password),
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent sign-up
            await self.db.rollback()
            raise Conflict("Username or email already registered")
        logger.info(f"User registered: {user.username} ({user.id})")
        return user

    async def authenticate(self, login: str, password: str) -> User:
        """Verify credentials by username or email. Banned accounts are refused with their reason."""
        result = await self.db.execute(
            select(User).where(
                or_(func.lower(User.username) == login.lower(), User.email == login.lower())
            )
        )
        user = result.scalar_one_or_none()
        if not user or not verify_password(password, user.hashed_password):
            raise Unauthorized("Invalid username or password")
        if user.is_banned:
            logger.info(f"Login refused for banned user {user.id}")
            raise BannedAccount(user.ban_reason)
        return user

    async def get_by_id(self, user_id: UUID) -> User:
        result = await self.db.execute(select(User).where(User.id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise NotFound("User not found")
        return user

    async def list(
        self,
        search: Optional[str] = None,
        is_banned: Optional[bool] = None,
        is_verified_organizer: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[List[User], int]:
        query = select(User)
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(User.username.ilike(pattern), User.email.ilike(pattern)))
        if is_banned is not None:
            query = query.where(User.is_banned == is_banned)
        if is_verified_organizer is not None:
            query = query.where(User.is_verified_organizer == is_verified_organizer)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(User.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars()), total or 0

    # ── Role flags ────────────────────────────────────────────

    async def set_verified(self, user: User, verified: bool) -> User:
        user.is_verified_organizer = verified
        await self.db.flush()
        return user

    async def ban(self, user: User, reason: str) -> User:
        user.is_banned = True
        user.ban_reason = reason
        user.banned_at = datetime.now(timezone.utc)
        await self.db.flush()
        return user

    async def unban(self, user: User) -> User:
        user.is_banned = False
        user.ban_reason = None
        user.banned_at = None
        await self.db.flush()
        return user
