"""
services/auth/router.py
Username/password authentication.
Implements: Register → Login (JWT issue) → Me → Logout (deny-list jti)
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.user.store import UserStore
from shared.middleware.auth import AccessRequired, TokenData, get_current_user, get_token_data
from shared.models.models import User
from shared.schemas.schemas import (
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import create_access_token, get_token_remaining_ttl

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _issue_token(user: User) -> TokenResponse:
    access_token, _ = create_access_token(
        user_id=str(user.id),
        username=user.username,
        is_admin=user.is_admin,
    )
    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(AccessRequired("auth.register"))],
)
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create an account and sign in. Duplicate username or email → 409."""
    user = await UserStore(db).create(
        username=data.username,
        email=data.email,
        password=data.password,
        phone=data.phone,
    )
    await db.commit()
    return _issue_token(user)


@router.post(
    "/login",
    response_model=TokenResponse,
    dependencies=[Depends(AccessRequired("auth.login"))],
)
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    """
    Exchange username (or email) + password for an access token.
    Banned accounts get 403 with the stored ban reason.
    """
    user = await UserStore(db).authenticate(data.username, data.password)
    return _issue_token(user)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    token_data: TokenData = Depends(get_token_data),
    current_user: User = Depends(AccessRequired("auth.logout")),
    redis=Depends(get_redis),
):
    """Revoke the presented access token until it would have expired anyway."""
    ttl = get_token_remaining_ttl(token_data.payload)
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)
    return MessageResponse(message="Logged out successfully")
