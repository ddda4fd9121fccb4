from collections.abc import AsyncIterator

from redis.asyncio import Redis

from storefront.core.config import get_settings


async def get_redis_client() -> AsyncIterator[Redis | None]:
    """Yield a client for callback locks, or None when Redis is disabled."""
    settings = get_settings()
    if not settings.redis_url:
        yield None
        return

    client = Redis.from_url(settings.redis_url)
    try:
        yield client
    finally:
        await client.aclose()
