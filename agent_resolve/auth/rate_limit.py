"""Token bucket rate limiter backed by Redis."""

import abc
import logging
import time
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response
from redis.exceptions import RedisError

from agent_resolve.auth.middleware import parse_operator_id
from agent_resolve.config import settings
from agent_resolve.redis import get_redis

logger = logging.getLogger(__name__)

# Lua script for atomic token bucket check-and-consume
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = capacity
    last_refill = now
end

local elapsed = now - last_refill
local new_tokens = math.min(capacity, tokens + elapsed * (refill_rate / 60.0))

if new_tokens >= 1 then
    new_tokens = new_tokens - 1
    redis.call('HSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, 120)
    return {1, math.floor(new_tokens), 0}
else
    local retry_after = math.ceil((1 - new_tokens) * 60 / refill_rate)
    redis.call('HSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, 120)
    return {0, 0, retry_after}
end
"""


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class RateLimiter(abc.ABC):
    @abc.abstractmethod
    async def check_limit(self, key: str, capacity: int, refill_per_min: int) -> RateLimitDecision:
        """Consume one token from ``key``'s bucket if one is available."""


class RedisRateLimiter(RateLimiter):
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def check_limit(self, key: str, capacity: int, refill_per_min: int) -> RateLimitDecision:
        try:
            result = await self.redis.eval(_TOKEN_BUCKET_SCRIPT, 1, key, capacity, refill_per_min, time.time())
        except (RedisError, OSError) as e:
            # Limiting is a guard rail; an unreachable Redis must not take the API down with it
            logger.warning("Rate limiter unavailable, allowing %s: %s", key, e)
            return RateLimitDecision(allowed=True, remaining=capacity, retry_after=0)
        return RateLimitDecision(allowed=bool(int(result[0])), remaining=int(result[1]), retry_after=int(result[2]))


async def get_rate_limiter(redis: aioredis.Redis = Depends(get_redis)) -> RateLimiter:
    return RedisRateLimiter(redis)


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) based on endpoint."""
    # Registration gets its own tight limit
    if method == "POST" and path.rstrip("/") == "/agents":
        return (
            settings.rate_limit_registration_capacity,
            settings.rate_limit_registration_refill_per_min,
            "registration",
        )
    if method in ("POST", "PATCH", "DELETE"):
        # Dispute actions can cost credits and start oracle calls
        if path.startswith("/disputes"):
            return (
                settings.rate_limit_dispute_capacity,
                settings.rate_limit_dispute_refill_per_min,
                "dispute",
            )
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For for reverse proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


async def check_rate_limit(
    request: Request,
    response: Response,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Rate limit dependency, bucketed per operator (or client IP) and endpoint category."""
    operator_id = parse_operator_id(request.headers.get("Authorization", ""))
    capacity, refill_rate, category = _get_rate_config(request.method.upper(), request.url.path)

    if operator_id:
        bucket_key = f"ratelimit:{operator_id}:{category}"
    else:
        bucket_key = f"ratelimit:ip:{_get_client_ip(request)}:{category}"

    decision = await limiter.check_limit(bucket_key, capacity, refill_rate)

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)

    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(decision.retry_after)},
        )
