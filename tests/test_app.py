"""App-level concerns: health, middleware, fee schedule and rate limiting."""

import pytest
import redis.asyncio as aioredis
from httpx import AsyncClient

from agent_resolve.auth.rate_limit import (
    RateLimitDecision,
    RateLimiter,
    RedisRateLimiter,
    _get_rate_config,
    get_rate_limiter,
)
from agent_resolve.config import settings
from agent_resolve.main import app
from tests.conftest import OPERATOR_A, register_agent_http, signed_request


class DenyAllLimiter(RateLimiter):
    async def check_limit(self, key: str, capacity: int, refill_per_min: int) -> RateLimitDecision:
        return RateLimitDecision(allowed=False, remaining=0, retry_after=42)


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.headers["x-content-type-options"] == "nosniff"
    assert resp.headers["x-frame-options"] == "DENY"
    assert resp.headers["cache-control"] == "no-store"
    assert "max-age" in resp.headers["strict-transport-security"]


@pytest.mark.asyncio
async def test_body_size_limit_exceeded(client: AsyncClient) -> None:
    resp = await client.post(
        "/disputes",
        content=b"x",
        headers={"Content-Length": "2000000", "Content-Type": "application/json"},
    )
    assert resp.status_code == 413
    assert resp.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_fee_schedule_is_public(client: AsyncClient) -> None:
    resp = await client.get("/fees")
    assert resp.status_code == 200
    fees = resp.json()["data"]
    assert fees["escalation"]["credits"] == settings.escalation_fee_credits
    assert fees["dispute_filing"]["free_below_cents"] == 10_000
    assert fees["dispute_filing"]["max_credits"] == 5_000


@pytest.mark.asyncio
async def test_rate_limit_headers(client: AsyncClient) -> None:
    agent_ref = await register_agent_http(client)
    resp = await signed_request(client, "GET", f"/agents/{agent_ref}", OPERATOR_A)
    assert resp.status_code == 200
    assert resp.headers["x-ratelimit-limit"] == str(settings.rate_limit_read_capacity)
    assert resp.headers["x-ratelimit-remaining"] == str(settings.rate_limit_read_capacity - 1)


@pytest.mark.asyncio
async def test_rate_limited_request(client: AsyncClient) -> None:
    limiter = DenyAllLimiter()

    async def override_get_rate_limiter() -> RateLimiter:
        return limiter

    app.dependency_overrides[get_rate_limiter] = override_get_rate_limiter

    resp = await signed_request(client, "POST", "/agents", OPERATOR_A, body={"identifier": "throttled"})
    assert resp.status_code == 429
    assert resp.headers["retry-after"] == "42"
    assert resp.json()["error"]["code"] == "RATE_LIMITED"


@pytest.mark.parametrize(
    ("method", "path", "category"),
    [
        ("POST", "/agents", "registration"),
        ("POST", "/agents/", "registration"),
        ("POST", "/disputes/RDISP-7KQ2M9XH4TBW3NCE/evidence", "dispute"),
        ("POST", "/transactions", "write"),
        ("POST", "/escalations/RESC-7KQ2M9XH4TBW3NCE/close", "write"),
        ("GET", "/disputes", "read"),
        ("GET", "/agents/scraper-1/trust", "read"),
    ],
)
def test_rate_config_categories(method: str, path: str, category: str) -> None:
    assert _get_rate_config(method, path)[2] == category


@pytest.mark.asyncio
async def test_limiter_fails_open_without_redis() -> None:
    redis = aioredis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.2)
    try:
        decision = await RedisRateLimiter(redis).check_limit("ratelimit:test:read", 5, 1)
    finally:
        await redis.aclose()
    assert decision.allowed is True
    assert decision.remaining == 5
