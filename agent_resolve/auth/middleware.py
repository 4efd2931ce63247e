"""Ed25519 operator authentication and per-request agent context."""

import hmac

import redis.asyncio as aioredis
from fastapi import Depends, Header, HTTPException, Request

from agent_resolve.config import settings
from agent_resolve.dependencies import get_store
from agent_resolve.errors import ValidationError
from agent_resolve.models.agent import Agent
from agent_resolve.redis import get_redis
from agent_resolve.repositories.base import Store
from agent_resolve.services import agent as agent_service
from agent_resolve.utils.crypto import is_timestamp_fresh, verify_signature

AUTH_SCHEME = "OperatorSig "


class AuthenticatedOperator:
    """Verified operator context."""

    def __init__(self, operator_id: str) -> None:
        self.operator_id = operator_id


def parse_operator_id(auth_header: str) -> str | None:
    if not auth_header.startswith(AUTH_SCHEME):
        return None
    operator_id, sep, _ = auth_header[len(AUTH_SCHEME):].partition(":")
    return operator_id if sep and operator_id else None


def request_target(request: Request) -> str:
    """Path plus query string, exactly as signed by the client."""
    if request.url.query:
        return f"{request.url.path}?{request.url.query}"
    return request.url.path


async def verify_request(
    request: Request,
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedOperator:
    """Verify the operator's Ed25519 signature on the incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    # Authorization: OperatorSig <operator_id>:<signature>
    if not auth_header.startswith(AUTH_SCHEME):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")
    operator_id = parse_operator_id(auth_header)
    if operator_id is None:
        raise HTTPException(status_code=403, detail="Malformed authorization header")
    signature = auth_header.split(":", 1)[1]

    if not is_timestamp_fresh(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    public_key = settings.operator_public_keys.get(operator_id)
    if public_key is None:
        raise HTTPException(status_code=403, detail="Unknown operator")

    body = await request.body()
    if not verify_signature(public_key, signature, timestamp, request.method, request_target(request), body):
        raise HTTPException(status_code=403, detail="Invalid signature")

    # Replay protection, checked last so a forged request cannot burn a nonce
    if nonce:
        fresh = await redis.set(f"nonce:{operator_id}:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not fresh:
            raise HTTPException(status_code=403, detail="Nonce already used")

    return AuthenticatedOperator(operator_id=operator_id)


async def get_acting_agent(
    x_agent_ref: str | None = Header(None),
    auth: AuthenticatedOperator = Depends(verify_request),
    store: Store = Depends(get_store),
) -> Agent:
    """The operator's agent this request acts for, named by ``X-Agent-Ref``."""
    if not x_agent_ref:
        raise ValidationError("X-Agent-Ref header is required", code="AGENT_REF_REQUIRED")
    return await agent_service.lookup(store, auth.operator_id, x_agent_ref)


async def verify_arbitrator(x_arbitrator_key: str | None = Header(None)) -> None:
    if not x_arbitrator_key or not hmac.compare_digest(
        x_arbitrator_key.encode(), settings.arbitrator_api_key.encode()
    ):
        raise HTTPException(status_code=403, detail="Arbitrator credentials required")
