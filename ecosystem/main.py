"""
Ecosystem — FastAPI Application Entry Point

- Lifespan builds the long-lived collaborators once and parks them on
  ``app.state``: outbound HTTP client, provider quota, optional Redis,
  embedding cache, provider client and the per-user quota.
- Every ``EcosystemError`` is rendered by one handler as
  ``{"error", "detail", "context"?}``.
- Middleware binds a request id into the structlog context, enforces a
  wall-clock timeout and counts in-flight requests so shutdown can drain.
- ``/health`` (liveness) and ``/health/deep`` (readiness) sit outside the
  versioned API.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import httpx
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ecosystem.config import Settings, get_settings
from ecosystem.database import dispose_engine, get_engine, get_session_factory
from ecosystem.errors import EcosystemError, RateLimitError
from ecosystem.services.embedding_cache import EmbeddingCache
from ecosystem.services.provider_client import EmbeddingProviderClient
from ecosystem.services.rate_limiter import RateLimiter

settings = get_settings()


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.LOG_LEVEL)
logger: structlog.stdlib.BoundLogger = structlog.get_logger("ecosystem")


# ---------------------------------------------------------------------------
# In-flight request accounting
# ---------------------------------------------------------------------------

class InFlightRequests:
    """Counts requests currently inside the app so shutdown can wait for them."""

    def __init__(self) -> None:
        self._count = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def count(self) -> int:
        return self._count

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        self._count += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._count -= 1
            if self._count == 0:
                self._idle.set()

    async def drain(self, timeout: float) -> bool:
        """Wait for the count to reach zero; ``False`` if *timeout* expired."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("drain_timeout_exceeded", remaining_requests=self._count)
            return False
        return True


inflight = InFlightRequests()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

async def _connect_redis(cfg: Settings):
    """Connected Redis client, or ``None`` when unset or unreachable."""
    if not cfg.REDIS_URL:
        logger.info("redis_skip", reason="REDIS_URL not configured")
        return None

    import redis.asyncio as aioredis

    client = aioredis.from_url(cfg.REDIS_URL, decode_responses=True, socket_connect_timeout=5)
    try:
        await client.ping()
    except (aioredis.RedisError, OSError):
        logger.exception("redis_unavailable", url=cfg.REDIS_URL)
        await client.aclose()
        return None
    logger.info("redis_connected", url=cfg.REDIS_URL)
    return client


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("startup_begin", environment=settings.ENVIRONMENT, log_level=settings.LOG_LEVEL)

    async with get_engine().begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_pool_initialised")

    http_client = httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    redis_client = await _connect_redis(settings)
    cache = EmbeddingCache(redis=redis_client, ttl_seconds=settings.EMBEDDING_CACHE_TTL_SECONDS)
    provider_quota = RateLimiter(
        max_requests=settings.PROVIDER_REQUESTS_PER_MINUTE,
        window_seconds=60.0,
        max_concurrent=settings.PROVIDER_MAX_CONCURRENT,
    )

    app.state.http_client = http_client
    app.state.redis = redis_client
    app.state.embedding_cache = cache
    app.state.provider_client = EmbeddingProviderClient(
        http_client, settings=settings, rate_limiter=provider_quota, cache=cache
    )
    app.state.user_rate_limiter = RateLimiter(
        max_requests=settings.USER_REQUESTS_PER_MINUTE, window_seconds=60.0
    )
    logger.info("startup_complete", **app.state.provider_client.configuration_status())

    yield

    logger.info("shutdown_begin", in_flight=inflight.count)
    await inflight.drain(settings.SHUTDOWN_DRAIN_SECONDS)
    await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
        logger.info("redis_closed")
    await dispose_engine()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request runs past ``timeout_seconds``."""

    def __init__(self, app, timeout_seconds: float) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                method=request.method,
                path=request.url.path,
                timeout=self.timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={"error": "timeout", "detail": "Request timed out"},
            )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request id and caller into the log context, then log the outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            user_id=request.headers.get("x-user-id"),
        )
        start = time.perf_counter()

        async with inflight.track():
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request_error",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2),
                )
                raise

        response.headers["X-Request-Id"] = request_id
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------

async def ecosystem_error_handler(request: Request, exc: EcosystemError) -> JSONResponse:
    log = logger.bind(path=request.url.path, error=exc.code, status=exc.status_code)
    if exc.status_code >= 500:
        log.error("request_failed", message=exc.message, details=exc.details)
    else:
        log.warning("request_rejected", message=exc.message)

    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Ecosystem",
    description="Professional matching engine: embeddings, scoring, lifecycle and onboarding",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)
app.add_exception_handler(EcosystemError, ecosystem_error_handler)

# Last added runs first: CORS, then timeout, then request context.
app.add_middleware(RequestContextMiddleware)
app.add_middleware(TimeoutMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health checks
# ---------------------------------------------------------------------------

@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    return {"status": "healthy"}


async def _check_component(name: str, check: Callable[[], Awaitable[str]], result: dict) -> None:
    try:
        result[name] = await check()
    except Exception as exc:
        logger.error("readiness_check_failed", component=name, error=str(exc))
        result[name] = f"error: {exc}"
        result["status"] = "degraded"


@app.get("/health/deep", tags=["health"])
async def health_deep(request: Request) -> dict:
    """Readiness: database round trip, Redis ping, provider credential."""
    result: dict = {"status": "healthy"}

    async def database() -> str:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        return "connected"

    async def redis() -> str:
        client = getattr(request.app.state, "redis", None)
        if client is None:
            return "not_configured"
        await client.ping()
        return "connected"

    await _check_component("database", database, result)
    await _check_component("redis", redis, result)

    client = getattr(request.app.state, "provider_client", None)
    if client is None:
        result["provider"] = "not_initialised"
        result["status"] = "degraded"
    elif not client.configuration_status()["embedding_key_configured"]:
        result["provider"] = "missing_credential"
        result["status"] = "degraded"
    else:
        result["provider"] = "configured"

    return result


from ecosystem.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
