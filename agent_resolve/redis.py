import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from agent_resolve.config import settings

logger = logging.getLogger(__name__)

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


async def redis_available() -> bool:
    """Ping the shared pool. Background loops fall back to storage sweeps without Redis."""
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable at %s: %s", settings.redis_url, e)
        return False
    finally:
        await client.aclose()
