"""Test configuration and fixtures.

The app runs against the in-memory store, a stub oracle and an in-process
credit ledger, so the suite needs neither Postgres nor Redis. Tests that
exercise Redis directly use the ``redis_client`` fixture, which skips when
Redis is unreachable.
"""

import asyncio
import json
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient, Response
from nacl.encoding import HexEncoder
from nacl.signing import SigningKey
from redis.exceptions import RedisError

from agent_resolve.auth.rate_limit import RateLimitDecision, RateLimiter, get_rate_limiter
from agent_resolve.config import settings
from agent_resolve.dependencies import (
    get_credit_ledger,
    get_oracle,
    get_review_scheduler,
    get_store,
    get_task_queue,
)
from agent_resolve.main import app
from agent_resolve.models.agent import Agent
from agent_resolve.models.dispute import ArbitrationTrigger, ClaimType, Dispute, Ruling
from agent_resolve.models.transaction import Transaction
from agent_resolve.repositories.memory import InMemoryStore
from agent_resolve.schemas.dispute import DisputeFiling
from agent_resolve.schemas.transaction import EscrowFunding, TransactionProposal
from agent_resolve.services import agent as agent_service
from agent_resolve.services import arbitration
from agent_resolve.services import dispute as dispute_service
from agent_resolve.services import transaction as transaction_service
from agent_resolve.services.credit import InMemoryCreditLedger
from agent_resolve.services.oracle import ArbitrationOracle, ArbitrationRequest, ArbitrationResult
from agent_resolve.services.review_window import ReviewScheduler
from agent_resolve.services.work_queue import TaskQueue
from agent_resolve.utils.crypto import generate_nonce, sign_request

OPERATOR_A = "op-alpha"
OPERATOR_B = "op-beta"


def _seeded_keypair(seed: int) -> tuple[str, str]:
    """Fixed keys: this module is loaded both as ``conftest`` and as ``tests.conftest``."""
    signing_key = SigningKey(bytes([seed]) * 32)
    return (
        signing_key.encode(encoder=HexEncoder).decode(),
        signing_key.verify_key.encode(encoder=HexEncoder).decode(),
    )


# operator_id -> (private_key_hex, public_key_hex)
OPERATOR_KEYS = {
    OPERATOR_A: _seeded_keypair(1),
    OPERATOR_B: _seeded_keypair(2),
}

ARBITRATOR_HEADERS = {"X-Arbitrator-Key": "test-arbitrator-key"}


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------

class StubOracle(ArbitrationOracle):
    """Returns a fixed ruling, or raises ``error``. Records every request."""

    def __init__(self, result: ArbitrationResult | None = None, error: Exception | None = None) -> None:
        self.result = result or ArbitrationResult(
            ruling=Ruling.CLAIMANT,
            reasoning="The respondent did not deliver what the terms required.",
            details={"confidence": 0.9, "key_factors": ["missed delivery"]},
        )
        self.error = error
        self.delay = 0.0
        self.calls: list[ArbitrationRequest] = []

    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class AllowAllLimiter(RateLimiter):
    async def check_limit(self, key: str, capacity: int, refill_per_min: int) -> RateLimitDecision:
        return RateLimitDecision(allowed=True, remaining=capacity - 1, retry_after=0)


class RecordingScheduler(ReviewScheduler):
    def __init__(self) -> None:
        self.scheduled: dict[uuid.UUID, datetime] = {}
        self.cancelled: list[uuid.UUID] = []

    async def schedule(self, dispute: Dispute) -> None:
        self.scheduled[dispute.dispute_id] = dispute.review_closes_at

    async def cancel(self, dispute_id: uuid.UUID) -> None:
        self.scheduled.pop(dispute_id, None)
        self.cancelled.append(dispute_id)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(
        settings, "operator_public_keys", {op: pub for op, (_, pub) in OPERATOR_KEYS.items()}
    )
    object.__setattr__(settings, "arbitrator_api_key", ARBITRATOR_HEADERS["X-Arbitrator-Key"])
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def oracle() -> StubOracle:
    return StubOracle()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger(starting_balance=100_000)


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest_asyncio.fixture
async def queue() -> AsyncGenerator[TaskQueue, None]:
    work = TaskQueue()
    yield work
    await work.shutdown()


@pytest_asyncio.fixture
async def client(
    store: InMemoryStore,
    oracle: StubOracle,
    ledger: InMemoryCreditLedger,
    queue: TaskQueue,
    scheduler: RecordingScheduler,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with every process-wide collaborator overridden."""
    limiter = AllowAllLimiter()

    async def override_get_review_scheduler() -> ReviewScheduler:
        return scheduler

    async def override_get_rate_limiter() -> RateLimiter:
        return limiter

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_oracle] = lambda: oracle
    app.dependency_overrides[get_credit_ledger] = lambda: ledger
    app.dependency_overrides[get_task_queue] = lambda: queue
    app.dependency_overrides[get_review_scheduler] = override_get_review_scheduler
    app.dependency_overrides[get_rate_limiter] = override_get_rate_limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[aioredis.Redis, None]:
    """A scratch Redis database. Skips the test when Redis is not running."""
    base_url = settings.redis_url.rsplit("/", 1)[0]
    client = aioredis.from_url(f"{base_url}/15")
    try:
        await client.ping()
    except (RedisError, OSError):
        await client.aclose()
        pytest.skip("Redis not available")
    await client.flushdb()
    yield client
    await client.flushdb()
    await client.aclose()


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def encode_body(body: dict | list | None) -> bytes:
    if body is None:
        return b""
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode()


def make_auth_headers(
    operator_id: str,
    method: str,
    path: str,
    body: bytes = b"",
    agent_ref: str | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Build signed operator headers for a request. ``path`` includes any query string."""
    private_key, _ = OPERATOR_KEYS[operator_id]
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(private_key, timestamp, method, path, body)
    headers = {
        "Authorization": f"OperatorSig {operator_id}:{signature}",
        "X-Timestamp": timestamp,
    }
    if agent_ref is not None:
        headers["X-Agent-Ref"] = agent_ref
    if nonce is not None:
        headers["X-Nonce"] = nonce
    return headers


async def signed_request(
    client: AsyncClient,
    method: str,
    path: str,
    operator_id: str = OPERATOR_A,
    agent_ref: str | None = None,
    body: dict | list | None = None,
) -> Response:
    """Send exactly the bytes that were signed."""
    content = encode_body(body)
    headers = make_auth_headers(operator_id, method, path, content, agent_ref)
    if body is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=content, headers=headers)


async def register_agent_http(
    client: AsyncClient, operator_id: str = OPERATOR_A, identifier: str | None = None
) -> str:
    """Register an agent over HTTP, return its public id."""
    body = {"identifier": identifier or f"agent-{generate_nonce()[:8]}", "display_name": "Test Agent"}
    resp = await signed_request(client, "POST", "/agents", operator_id, body=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["agent_id"]


# ---------------------------------------------------------------------------
# Service-level factories
# ---------------------------------------------------------------------------

async def make_agent(store: InMemoryStore, operator_id: str = OPERATOR_A, identifier: str | None = None) -> Agent:
    return await agent_service.register(store, operator_id, identifier or f"agent-{generate_nonce()[:8]}")


async def make_accepted_transaction(
    store: InMemoryStore,
    ledger: InMemoryCreditLedger,
    proposer: Agent,
    receiver: Agent,
    stated_value: int | None = 5_000,
    fund: bool = False,
) -> Transaction:
    transaction = await transaction_service.propose(
        store,
        ledger,
        proposer,
        TransactionProposal(
            receiver_id=receiver.external_id,
            title="Summarize 40 PDFs",
            terms={"deliverable": "summaries", "due_days": 3},
            stated_value=stated_value,
        ),
    )
    transaction = await transaction_service.respond(store, transaction.external_id, receiver.agent_id, True)
    if fund:
        transaction = await transaction_service.fund_escrow(
            store, transaction.external_id, proposer.agent_id, EscrowFunding(amount=stated_value or 100)
        )
    return transaction


def make_filing(transaction: Transaction, claim_type: ClaimType = ClaimType.NON_PERFORMANCE) -> DisputeFiling:
    return DisputeFiling(
        transaction_id=transaction.external_id,
        claim_type=claim_type,
        claim_summary="Work was never delivered",
        requested_resolution="Refund the escrowed amount",
    )


async def make_dispute(
    store: InMemoryStore,
    ledger: InMemoryCreditLedger,
    claimant: Agent,
    respondent: Agent,
    stated_value: int | None = 5_000,
) -> Dispute:
    transaction = await make_accepted_transaction(store, ledger, claimant, respondent, stated_value)
    return await dispute_service.file(store, ledger, claimant, make_filing(transaction))


async def make_ruled_dispute(
    store: InMemoryStore,
    ledger: InMemoryCreditLedger,
    oracle: StubOracle,
    queue: TaskQueue,
    claimant: Agent,
    respondent: Agent,
    stated_value: int | None = 5_000,
) -> Dispute:
    """File, close both submissions and run the oracle to a ruling."""
    dispute = await make_dispute(store, ledger, claimant, respondent, stated_value)
    await dispute_service.mark_submission_complete(store, dispute.external_id, claimant.agent_id)
    await dispute_service.mark_submission_complete(store, dispute.external_id, respondent.agent_id)
    assert await arbitration.start_arbitration(
        store, oracle, queue, dispute.dispute_id, ArbitrationTrigger.EXPLICIT
    )
    await queue.drain()
    return await reload_dispute(store, dispute.dispute_id)


async def reload_dispute(store: InMemoryStore, dispute_id: uuid.UUID) -> Dispute:
    async with store.atomic() as uow:
        return await uow.disputes.get(dispute_id)


async def reload_agent(store: InMemoryStore, agent_id: uuid.UUID) -> Agent:
    async with store.atomic() as uow:
        return await uow.agents.get(agent_id)
