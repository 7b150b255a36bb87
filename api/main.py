import logging
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.deps import get_breakers, get_redis, get_response_cache, get_settings
from api.routes.infer import router as infer_router
from core.config import Settings, load_settings
from inference.detectors import (
    AcneDetectorClient,
    ImageFetcher,
    RednessDetectorClient,
    WrinklesDetectorClient,
)
from inference.orchestrator import InferenceOrchestrator, build_breakers
from inference.queue import RedisJobQueue
from inference.recommendations import RecommendationClient
from infrastructure.cache import ResponseCache
from infrastructure.circuit_breaker import BreakerRegistry, CircuitState
from infrastructure.metrics import (
    LoggingBreakerListener,
    PrometheusBreakerListener,
    get_metrics_response,
)
from infrastructure.rate_limiter import RateLimiter
from infrastructure.redis_client import connect_redis

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(name)s] %(levelname)s %(message)s"
_LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Outbound connection timeout; per-call deadlines are enforced by the breakers.
_HTTP_CONNECT_TIMEOUT_SECONDS = 5.0


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure the root logger to write to stderr.

    Args:
        level: Python logging level (default: INFO)
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_LOG_DATE_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # Silence noisy third-party loggers that write INFO spam
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_orchestrator(
    settings: Settings,
    *,
    redis_client: Any,
    http: httpx.AsyncClient,
    cache: ResponseCache,
    breakers: BreakerRegistry,
) -> InferenceOrchestrator:
    """Wire the orchestrator from settings and shared clients."""
    queue = None
    if settings.queue_enabled and redis_client is not None:
        queue = RedisJobQueue(redis_client, settings.queue_name)
    elif settings.queue_enabled:
        logger.warning("Job queue enabled but Redis is unavailable — sync=false runs synchronously")

    recommendations = None
    if settings.recommendations_url:
        recommendations = RecommendationClient(
            http,
            url=settings.recommendations_url,
            timeout_seconds=settings.recommendations_timeout_seconds,
        )

    return InferenceOrchestrator(
        settings=settings,
        cache=cache,
        limiter=RateLimiter(redis_client, bypass=settings.bypass_rate_limit),
        breakers=breakers,
        acne=AcneDetectorClient(http, settings.acne),
        redness=RednessDetectorClient(http, settings.redness),
        wrinkles=WrinklesDetectorClient(http, settings.wrinkles),
        image_fetcher=ImageFetcher(http, settings.max_image_bytes),
        recommendations=recommendations,
        queue=queue,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Composition root: build shared components once per process."""
    configure_logging()
    settings = load_settings()
    logger.info("Starting inference orchestrator (environment=%s)", settings.environment)

    redis_client = await connect_redis(settings.redis_url)
    cache = ResponseCache(
        redis_client,
        ttl_seconds=settings.cache_ttl_seconds,
        local_max_entries=settings.local_cache_max_entries,
        local_ttl_seconds=settings.local_cache_ttl_seconds,
    )
    breakers = build_breakers(
        settings, cache, [LoggingBreakerListener(), PrometheusBreakerListener()]
    )

    timeout = httpx.Timeout(None, connect=_HTTP_CONNECT_TIMEOUT_SECONDS)
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as http:
        app.state.settings = settings
        app.state.redis = redis_client
        app.state.cache = cache
        app.state.breakers = breakers
        app.state.orchestrator = build_orchestrator(
            settings, redis_client=redis_client, http=http, cache=cache, breakers=breakers
        )
        yield

    if redis_client is not None:
        await redis_client.aclose()
    logger.info("Inference orchestrator stopped")


app = FastAPI(title="Skin Inference Orchestrator", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Cache", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(infer_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 with the public error shape."""
    errors = exc.errors()
    message = str(errors[0].get("msg", "Invalid request")) if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": "Validation Error", "message": message})


async def _redis_check(redis_client: Any) -> dict[str, Any]:
    if redis_client is None:
        return {"status": "unhealthy", "error": "not connected"}
    t_start = time.perf_counter()
    try:
        await redis_client.ping()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Health: Redis ping failed: %s", exc)
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - t_start) * 1000, 2)}


@app.get("/health")
async def health(
    settings: Annotated[Settings, Depends(get_settings)],
    redis_client: Annotated[Any, Depends(get_redis)],
    breakers: Annotated[BreakerRegistry, Depends(get_breakers)],
) -> JSONResponse:
    """Report dependency health; 200 when healthy, 503 when degraded."""
    checks: dict[str, Any] = {"redis": await _redis_check(redis_client)}
    for detector in (settings.acne, settings.redness, settings.wrinkles):
        checks[detector.name] = {
            "status": "healthy" if detector.configured else "unhealthy",
            "configured": detector.configured,
        }
    breaker_status = breakers.status()
    checks["circuit_breakers"] = {
        "status": "healthy"
        if all(b["state"] != CircuitState.OPEN.value for b in breaker_status)
        else "unhealthy",
        "breakers": {b["name"]: b["state"] for b in breaker_status},
    }

    healthy = all(check["status"] == "healthy" for check in checks.values())
    body = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
        "checks": checks,
    }
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=body,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


@app.get("/metrics")
def metrics() -> Response:
    """Prometheus metrics endpoint (text exposition format)."""
    body, content_type = get_metrics_response()
    return Response(content=body, media_type=content_type)


@app.get("/breakers")
def breakers_status(
    breakers: Annotated[BreakerRegistry, Depends(get_breakers)],
) -> list[dict[str, Any]]:
    """Return a status snapshot of every circuit breaker."""
    return breakers.status()


@app.post("/cache/invalidate")
async def cache_invalidate(
    pattern: str,
    cache: Annotated[ResponseCache, Depends(get_response_cache)],
) -> dict[str, int]:
    """Invalidate cached inference results whose key matches a glob pattern.

    Args:
        pattern: Redis-style glob, e.g. ``inference:https://acct.blob.core.windows.net/*``.

    Returns:
        Dict with ``deleted`` count.
    """
    deleted = await cache.invalidate(pattern)
    return {"deleted": deleted}


@app.get("/cache/stats")
def cache_stats(cache: Annotated[ResponseCache, Depends(get_response_cache)]) -> dict[str, Any]:
    """Return basic response cache statistics."""
    return cache.stats()
