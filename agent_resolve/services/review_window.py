"""Review window enforcement.

Every dispute still collecting submissions is indexed in a Redis sorted set
with score = review_closes_at. A single consumer sleeps until the earliest
entry is due, pops it and fires the timed arbitration trigger. Extending a
deadline re-adds the dispute with its new score.

Redis is an index, not the source of truth: the periodic sweep asks the store
for overdue disputes directly, and startup recovery rebuilds the index.
"""

import abc
import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from agent_resolve.config import settings
from agent_resolve.models.dispute import ArbitrationTrigger, Dispute
from agent_resolve.repositories.base import Store
from agent_resolve.services import arbitration
from agent_resolve.services import dispute as dispute_service
from agent_resolve.services import transaction as transaction_service
from agent_resolve.services.credit import CreditLedger
from agent_resolve.services.oracle import ArbitrationOracle
from agent_resolve.services.work_queue import TaskQueue

logger = logging.getLogger(__name__)

REVIEW_KEY = "dispute:review_closes"
RECOVERY_BATCH = 10_000


async def enqueue_review(redis: aioredis.Redis, dispute_id: uuid.UUID, closes_at_timestamp: float) -> None:
    """Index a dispute. Re-adding moves it to the new close time."""
    await redis.zadd(REVIEW_KEY, {str(dispute_id): closes_at_timestamp})
    logger.debug("Review for dispute %s closes at %s", dispute_id, closes_at_timestamp)


async def cancel_review(redis: aioredis.Redis, dispute_id: uuid.UUID) -> None:
    await redis.zrem(REVIEW_KEY, str(dispute_id))


async def pop_due(redis: aioredis.Redis, now: float, limit: int = 100) -> list[uuid.UUID]:
    """Remove and return disputes whose window has closed. Safe with several consumers."""
    members = await redis.zrangebyscore(REVIEW_KEY, "-inf", now, start=0, num=limit)
    due = []
    for member in members:
        # Another consumer may have taken it between the read and here
        if await redis.zrem(REVIEW_KEY, member):
            due.append(uuid.UUID(member.decode() if isinstance(member, bytes) else member))
    return due


class ReviewScheduler(abc.ABC):
    @abc.abstractmethod
    async def schedule(self, dispute: Dispute) -> None: ...

    @abc.abstractmethod
    async def cancel(self, dispute_id: uuid.UUID) -> None: ...


class RedisReviewScheduler(ReviewScheduler):
    """Index writes are best effort. The sweep covers anything that misses."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def schedule(self, dispute: Dispute) -> None:
        try:
            await enqueue_review(self.redis, dispute.dispute_id, dispute.review_closes_at.timestamp())
        except (RedisError, OSError):
            logger.warning("Could not index review for dispute %s; sweep will pick it up", dispute.external_id)

    async def cancel(self, dispute_id: uuid.UUID) -> None:
        try:
            await cancel_review(self.redis, dispute_id)
        except (RedisError, OSError):
            logger.warning("Could not drop review index entry for dispute %s", dispute_id)


async def run_review_consumer(
    store: Store,
    oracle: ArbitrationOracle,
    queue: TaskQueue,
    redis: aioredis.Redis,
) -> None:
    """Sleep until the next review window closes, then fire the timed trigger.

    Owns ``redis`` and closes it on shutdown.
    """
    while True:
        try:
            entries = await redis.zrangebyscore(REVIEW_KEY, "-inf", "+inf", start=0, num=1, withscores=True)
            if not entries:
                await asyncio.sleep(settings.review_poll_interval_seconds)
                continue

            _, closes_at = entries[0]
            now = time.time()
            if closes_at > now:
                # Wake early enough to notice a new, earlier entry
                await asyncio.sleep(min(closes_at - now, settings.review_poll_interval_seconds))
                continue

            for dispute_id in await pop_due(redis, now):
                await arbitration.start_arbitration(
                    store, oracle, queue, dispute_id, ArbitrationTrigger.TIMED
                )

        except asyncio.CancelledError:
            logger.info("Review consumer shutting down")
            break
        except Exception:
            logger.exception("Review consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def run_sweep_loop(
    store: Store, oracle: ArbitrationOracle, queue: TaskQueue, ledger: CreditLedger
) -> None:
    """Periodic store-driven housekeeping."""
    while True:
        try:
            await dispute_service.settle_unpaid_filings(store, ledger)
            await arbitration.process_due_disputes(store, oracle, queue)
            await arbitration.retry_stalled_arbitrations(store, oracle, queue)
            await transaction_service.expire_stale(store)
            await asyncio.sleep(settings.sweep_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sweep loop shutting down")
            break
        except Exception:
            logger.exception("Sweep loop error, retrying in 5s")
            await asyncio.sleep(5)


async def recover_review_index(store: Store, scheduler: ReviewScheduler) -> int:
    """Re-index every dispute still in its review window after a restart.

    ZADD with the same score is a no-op, so this is safe to run unconditionally.
    """
    async with store.atomic() as uow:
        pending = list(await uow.disputes.list_awaiting_review(RECOVERY_BATCH))

    for dispute in pending:
        await scheduler.schedule(dispute)

    if pending:
        logger.info("Review recovery: re-indexed %d disputes", len(pending))
    else:
        logger.info("Review recovery: no disputes awaiting review")
    return len(pending)
