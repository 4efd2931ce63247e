"""Review window index in Redis and its recovery from the store."""

import time
import uuid

import pytest
import redis.asyncio as aioredis

from agent_resolve.repositories.memory import InMemoryStore
from agent_resolve.services.credit import InMemoryCreditLedger
from agent_resolve.services.review_window import (
    REVIEW_KEY,
    RedisReviewScheduler,
    cancel_review,
    enqueue_review,
    pop_due,
    recover_review_index,
)
from agent_resolve.services.work_queue import TaskQueue
from tests.conftest import OPERATOR_B, RecordingScheduler, StubOracle, make_agent, make_dispute, make_ruled_dispute


@pytest.mark.asyncio
async def test_pop_due_returns_only_closed_windows(redis_client: aioredis.Redis) -> None:
    now = time.time()
    overdue, later = uuid.uuid4(), uuid.uuid4()
    await enqueue_review(redis_client, overdue, now - 5)
    await enqueue_review(redis_client, later, now + 3600)

    assert await pop_due(redis_client, now) == [overdue]
    assert await pop_due(redis_client, now) == []
    assert await redis_client.zcard(REVIEW_KEY) == 1


@pytest.mark.asyncio
async def test_re_adding_moves_the_close_time(redis_client: aioredis.Redis) -> None:
    now = time.time()
    dispute_id = uuid.uuid4()
    await enqueue_review(redis_client, dispute_id, now - 5)
    await enqueue_review(redis_client, dispute_id, now + 96 * 3600)

    assert await pop_due(redis_client, now) == []
    assert await redis_client.zscore(REVIEW_KEY, str(dispute_id)) == pytest.approx(now + 96 * 3600)


@pytest.mark.asyncio
async def test_cancel_review(redis_client: aioredis.Redis) -> None:
    dispute_id = uuid.uuid4()
    await enqueue_review(redis_client, dispute_id, time.time() - 5)
    await cancel_review(redis_client, dispute_id)
    assert await pop_due(redis_client, time.time()) == []


@pytest.mark.asyncio
async def test_redis_scheduler_indexes_disputes(
    redis_client: aioredis.Redis, store: InMemoryStore, ledger: InMemoryCreditLedger
) -> None:
    dispute = await make_dispute(store, ledger, await make_agent(store), await make_agent(store, OPERATOR_B))
    scheduler = RedisReviewScheduler(redis_client)

    await scheduler.schedule(dispute)
    score = await redis_client.zscore(REVIEW_KEY, str(dispute.dispute_id))
    assert score == pytest.approx(dispute.review_closes_at.timestamp())

    await scheduler.cancel(dispute.dispute_id)
    assert await redis_client.zscore(REVIEW_KEY, str(dispute.dispute_id)) is None


@pytest.mark.asyncio
async def test_redis_scheduler_tolerates_outage(store: InMemoryStore, ledger: InMemoryCreditLedger) -> None:
    dispute = await make_dispute(store, ledger, await make_agent(store), await make_agent(store, OPERATOR_B))
    redis = aioredis.from_url("redis://127.0.0.1:1/0", socket_connect_timeout=0.2)
    try:
        scheduler = RedisReviewScheduler(redis)
        await scheduler.schedule(dispute)
        await scheduler.cancel(dispute.dispute_id)
    finally:
        await redis.aclose()


@pytest.mark.asyncio
async def test_recovery_reindexes_open_reviews_only(
    store: InMemoryStore,
    ledger: InMemoryCreditLedger,
    oracle: StubOracle,
    queue: TaskQueue,
    scheduler: RecordingScheduler,
) -> None:
    a = await make_agent(store)
    b = await make_agent(store, OPERATOR_B)
    open_dispute = await make_dispute(store, ledger, a, b)
    await make_ruled_dispute(store, ledger, oracle, queue, a, b)

    assert await recover_review_index(store, scheduler) == 1
    assert scheduler.scheduled == {open_dispute.dispute_id: open_dispute.review_closes_at}


@pytest.mark.asyncio
async def test_recovery_into_redis(
    redis_client: aioredis.Redis, store: InMemoryStore, ledger: InMemoryCreditLedger
) -> None:
    a = await make_agent(store)
    b = await make_agent(store, OPERATOR_B)
    first = await make_dispute(store, ledger, a, b)
    second = await make_dispute(store, ledger, a, b)
    scheduler = RedisReviewScheduler(redis_client)

    assert await recover_review_index(store, scheduler) == 2
    # Running it again changes nothing
    assert await recover_review_index(store, scheduler) == 2
    members = {m.decode() for m in await redis_client.zrange(REVIEW_KEY, 0, -1)}
    assert members == {str(first.dispute_id), str(second.dispute_id)}
