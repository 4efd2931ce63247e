"""Process-wide collaborators, exposed as FastAPI dependencies.

Tests swap any of these through ``app.dependency_overrides``.
"""

from functools import lru_cache

import redis.asyncio as aioredis
from fastapi import Depends

from agent_resolve.config import settings
from agent_resolve.redis import get_redis
from agent_resolve.repositories.base import Store
from agent_resolve.services.credit import CreditLedger, HttpCreditLedger, InMemoryCreditLedger
from agent_resolve.services.oracle import ArbitrationOracle, HttpArbitrationOracle
from agent_resolve.services.review_window import RedisReviewScheduler, ReviewScheduler
from agent_resolve.services.work_queue import TaskQueue


@lru_cache
def get_store() -> Store:
    if settings.store_backend == "memory":
        from agent_resolve.repositories.memory import InMemoryStore
        return InMemoryStore()

    from agent_resolve.database import async_session_factory
    from agent_resolve.repositories.sql import SqlStore
    return SqlStore(async_session_factory)


@lru_cache
def get_oracle() -> ArbitrationOracle:
    return HttpArbitrationOracle(settings.oracle_url, settings.oracle_api_key, settings.oracle_timeout_seconds)


@lru_cache
def get_credit_ledger() -> CreditLedger:
    if settings.credit_ledger_url:
        return HttpCreditLedger(
            settings.credit_ledger_url,
            settings.credit_ledger_api_key,
            settings.credit_ledger_timeout_seconds,
        )
    return InMemoryCreditLedger(starting_balance=settings.dev_starting_credits)


@lru_cache
def get_task_queue() -> TaskQueue:
    return TaskQueue()


async def get_review_scheduler(redis: aioredis.Redis = Depends(get_redis)) -> ReviewScheduler:
    return RedisReviewScheduler(redis)
