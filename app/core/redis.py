from redis import asyncio as aioredis
from app.core.config import settings


class RedisManager:
    """One lazily created client shared by the Redis-backed adapters."""

    def __init__(self):
        self.redis = None

    def client(self):
        if self.redis is None:
            if not settings.REDIS_URL:
                raise RuntimeError("REDIS_URL not configured")
            self.redis = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
        return self.redis

    async def connect(self):
        """Open and verify the connection (called on FastAPI startup when Redis is in use)."""
        await self.client().ping()

    async def close(self):
        """Close Redis connection."""
        if self.redis:
            await self.redis.close()
            self.redis = None

redis_manager = RedisManager()
