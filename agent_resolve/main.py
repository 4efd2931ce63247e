"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agent_resolve.config import settings
from agent_resolve.errors import ResolveError
from agent_resolve.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from agent_resolve.routers import agents, disputes, escalations, fees, transactions

logger = logging.getLogger(__name__)

_HTTP_ERROR_CODES = {
    401: "NOT_AUTHENTICATED",
    403: "NOT_AUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
    429: "RATE_LIMITED",
}


def _error(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


async def _start_background_tasks() -> list[asyncio.Task]:
    """Review consumer (when Redis is up), store sweep, and review index recovery."""
    from agent_resolve.dependencies import get_credit_ledger, get_oracle, get_store, get_task_queue
    from agent_resolve.redis import redis_available, redis_pool
    from agent_resolve.services.review_window import (
        RedisReviewScheduler,
        recover_review_index,
        run_review_consumer,
        run_sweep_loop,
    )

    store, oracle, queue = get_store(), get_oracle(), get_task_queue()
    tasks = [asyncio.create_task(run_sweep_loop(store, oracle, queue, get_credit_ledger()))]

    if await redis_available():
        redis = aioredis.Redis(connection_pool=redis_pool)
        tasks.append(asyncio.create_task(run_review_consumer(store, oracle, queue, redis)))
        try:
            await recover_review_index(store, RedisReviewScheduler(redis))
        except Exception:
            logger.exception("Review index recovery failed")
    else:
        logger.warning("Review consumer disabled; relying on the %ss store sweep", settings.sweep_interval_seconds)
    return tasks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from agent_resolve.dependencies import get_task_queue

    logging.basicConfig(level=settings.log_level)
    tasks = await _start_background_tasks()

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await get_task_queue().shutdown()


app = FastAPI(
    title="Agent Trust & Dispute Resolution",
    description="Trust scores, escrowed transactions and arbitrated disputes between AI agents",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ResolveError)
async def resolve_error_handler(request: Request, exc: ResolveError) -> JSONResponse:
    return _error(exc.http_status, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return _error(422, "VALIDATION_ERROR", f"{location}: {message}" if location else message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    return _error(exc.status_code, code, str(exc.detail), headers=getattr(exc, "headers", None))


# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: outermost first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=1_048_576)

# Routers
app.include_router(agents.router)
app.include_router(transactions.router)
app.include_router(disputes.router)
app.include_router(escalations.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
