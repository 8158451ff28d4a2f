"""
config/redis_client.py
Async Redis client for caching, scheduled-job locking, JWT deny-list,
and rate limiting.
"""

import uuid
from typing import Optional

import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


def create_redis() -> aioredis.Redis:
    return aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = create_redis()
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Helper class for common Redis patterns used across services."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Job Locking ──────────────────────────────────────────
    async def acquire_job_lock(self, job_name: str, ttl: int = settings.REDIS_JOB_LOCK_TTL) -> Optional[str]:
        """
        Atomic job lock using SET NX (set if not exists).
        Returns the lock token if acquired, None if another run holds it.
        """
        token = str(uuid.uuid4())
        result = await self.client.set(f"job_lock:{job_name}", token, ex=ttl, nx=True)
        return token if result else None

    async def release_job_lock(self, job_name: str, token: str) -> None:
        """Release only if we still own the lock (it may have expired and been re-taken)."""
        key = f"job_lock:{job_name}"
        if await self.client.get(key) == token:
            await self.client.delete(key)

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count <= limit
