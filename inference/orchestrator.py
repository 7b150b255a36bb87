"""
Inference orchestrator — the ``POST /infer`` pipeline.

Request lifecycle::

    rate limit ──deny──→ 429
        │
    validate ───bad───→ 400
        │
    sync=false + queue → 202 (job id); a failed enqueue runs synchronously
        │
    cache lookup ─hit─→ recommendations → 200 X-Cache: HIT
        │
    fetch image once (base64)
        │
    ┌───┴──────────────┬───────────────────┐
    acne               redness             wrinkles
    retry → breaker    direct + timeout    retry → breaker
    fallback: cache    fallback: error     fallback: empty
    or sentinel        sentinel            sentinel
    └───┬──────────────┴───────────────────┘
        │  (gather; branches never raise)
    metrics + scaling factors + merge
        │
    cache write (only real acne results, analysis only)
        │
    recommendations (optional, per request, never cached)
        │
    200 X-Cache: MISS | FALLBACK

Any unexpected error after validation becomes a 503 with ``retryAfter``,
except while the acne breaker is open: then one fallback reconstruction is
attempted first.

The orchestrator is framework-free: ``handle`` takes the raw body and returns
an ``InferenceOutcome`` that the route maps onto an HTTP response.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from api.schemas.infer import InferRequest, validation_message
from core.config import Settings
from core.scaling import image_size, scaling_factors
from core.skin_metrics import (
    compute_acne_metrics,
    compute_redness_metrics,
    compute_wrinkles_metrics,
)
from core.validation import ImageValidationError, validate_image_url
from inference.detectors import (
    AcneDetectorClient,
    ImageFetcher,
    RednessDetectorClient,
    WrinklesDetectorClient,
)
from inference.queue import RedisJobQueue
from inference.recommendations import RecommendationClient
from infrastructure.cache import ResponseCache, inference_cache_key
from infrastructure.circuit_breaker import (
    BreakerRegistry,
    CircuitBreaker,
    CircuitBreakerListener,
)
from infrastructure.metrics import record_detector_retry, record_rate_limited
from infrastructure.rate_limiter import RateLimiter, rate_limit_headers
from infrastructure.retry import CallResult, RetryPolicy

logger = logging.getLogger(__name__)

ACNE = "acne"
WRINKLES = "wrinkles"

RETRY_AFTER_SECONDS = 30
FALLBACK_MESSAGE = "Service temporarily unavailable"
QUEUED_MESSAGE = "Request accepted for processing"

# Response fields that belong to one request and never enter the cache.
PER_REQUEST_FIELDS = ("meta", "recommendations", "recommendations_meta")


@dataclass(frozen=True)
class InferenceOutcome:
    """What the route should send back.

    Attributes:
        status_code: HTTP status.
        body: JSON body.
        headers: Extra response headers (``X-Cache``, ``X-RateLimit-*``).
        label: Short outcome name for metrics (hit, miss, fallback, ...).
    """

    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    label: str = "miss"


# ---------------------------------------------------------------------------
# Sentinels and fallbacks
# ---------------------------------------------------------------------------


def acne_sentinel(message: str = FALLBACK_MESSAGE) -> dict[str, Any]:
    return {
        "predictions": [],
        "image": {"width": 0, "height": 0},
        "fallback": True,
        "message": message,
    }


def redness_sentinel(error: str) -> dict[str, Any]:
    return {
        "num_polygons": 0,
        "polygons": [],
        "analysis_width": 0,
        "analysis_height": 0,
        "error": error,
    }


def wrinkles_sentinel(error: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "predictions": [],
        "image": {"width": 0, "height": 0},
        "fallback": True,
    }
    if error:
        result["error"] = error
    return result


def make_acne_fallback(cache: ResponseCache) -> Callable[[str], Awaitable[dict[str, Any]]]:
    """Acne fallback: the cached result for the same image, else the sentinel."""

    async def acne_fallback(image_url: str) -> dict[str, Any]:
        cached = await cache.get(inference_cache_key(image_url))
        if cached is not None:
            logger.warning("Acne detector unavailable, serving cached result for %s", image_url)
            return cached
        logger.warning("Acne detector unavailable, returning fallback response")
        return acne_sentinel()

    return acne_fallback


async def wrinkles_fallback(image_base64: str) -> dict[str, Any]:  # noqa: ARG001
    return wrinkles_sentinel()


def build_breakers(
    settings: Settings,
    cache: ResponseCache,
    listeners: Iterable[CircuitBreakerListener] = (),
) -> BreakerRegistry:
    """One breaker per retried detector, fallbacks attached."""
    listeners = list(listeners)
    return BreakerRegistry(
        [
            CircuitBreaker(
                ACNE,
                timeout_seconds=settings.acne.timeout_seconds,
                error_threshold_percentage=settings.acne.error_threshold_percentage,
                reset_timeout_seconds=settings.acne.reset_timeout_seconds,
                volume_threshold=settings.acne.volume_threshold,
                fallback=make_acne_fallback(cache),
                listeners=listeners,
            ),
            CircuitBreaker(
                WRINKLES,
                timeout_seconds=settings.wrinkles.timeout_seconds,
                error_threshold_percentage=settings.wrinkles.error_threshold_percentage,
                reset_timeout_seconds=settings.wrinkles.reset_timeout_seconds,
                volume_threshold=settings.wrinkles.volume_threshold,
                fallback=wrinkles_fallback,
                listeners=listeners,
            ),
        ]
    )


def _retry_hook(detector: str) -> Callable[[int, int, Exception], None]:
    def on_failed_attempt(attempt: int, retries_left: int, exc: Exception) -> None:
        if retries_left > 0:
            record_detector_retry(detector)
        logger.info(
            "%s detector attempt %d failed (%d retries left): %s",
            detector,
            attempt,
            retries_left,
            exc,
        )

    return on_failed_attempt


def _wrinkles_section(metrics: dict[str, Any], raw: Mapping[str, Any]) -> dict[str, Any]:
    # Raw detections travel with the metrics so clients can draw them.
    predictions = raw.get("predictions")
    width, height = image_size(raw)
    section = {
        **metrics,
        "predictions": list(predictions) if isinstance(predictions, list) else [],
        "image": {"width": width, "height": height},
    }
    if raw.get("error"):
        section["error"] = raw["error"]
    return section


def _analysis_only(result: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in result.items() if k not in PER_REQUEST_FIELDS}


def merge_results(
    acne_raw: Mapping[str, Any],
    redness_raw: Mapping[str, Any],
    wrinkles_raw: Mapping[str, Any],
    *,
    fallback: bool,
    message: str | None = None,
) -> dict[str, Any]:
    """Combine raw detector output, metrics and scaling factors into one result.

    Acne raw fields stay at the top level (``predictions``, ``image``, ...);
    metrics are nested under ``acne``, ``redness`` and ``wrinkles``.
    """
    acne = compute_acne_metrics(acne_raw.get("predictions"))
    redness = compute_redness_metrics(redness_raw)
    wrinkles = compute_wrinkles_metrics(wrinkles_raw.get("predictions"))

    original_w, original_h = image_size(acne_raw)
    wrinkles_w, wrinkles_h = image_size(wrinkles_raw)
    factors = {
        ACNE: scaling_factors(original_w, original_h, original_w, original_h).to_dict(),
        "redness": scaling_factors(
            original_w,
            original_h,
            redness_raw.get("analysis_width"),
            redness_raw.get("analysis_height"),
        ).to_dict(),
        WRINKLES: scaling_factors(original_w, original_h, wrinkles_w, wrinkles_h).to_dict(),
    }

    merged: dict[str, Any] = dict(acne_raw)
    merged.update(
        {
            "acne": acne.to_dict(),
            "redness": redness.to_dict(),
            "wrinkles": _wrinkles_section(wrinkles.to_dict(), wrinkles_raw),
            "scaling_factors": factors,
            "inference_id": acne_raw.get("inference_id") or uuid.uuid4().hex,
            "fallback": fallback,
        }
    )
    for name in PER_REQUEST_FIELDS:
        merged.pop(name, None)
    if fallback:
        merged["message"] = message or FALLBACK_MESSAGE
    else:
        merged.pop("message", None)
    return merged


class InferenceOrchestrator:
    """Runs the /infer pipeline.

    Args:
        settings: Process settings.
        cache: Two-tier response cache.
        limiter: Per-client rate limiter.
        breakers: Registry holding the "acne" and "wrinkles" breakers.
        acne: Acne detector client.
        redness: Redness detector client.
        wrinkles: Wrinkle detector client.
        image_fetcher: Downloads and base64-encodes the source image.
        recommendations: Recommendation client, or None to disable enrichment.
        queue: Job queue for ``sync=false`` requests, or None.
        acne_retry: Retry policy for the acne detector (default from settings).
        wrinkles_retry: Retry policy for the wrinkle detector.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        cache: ResponseCache,
        limiter: RateLimiter,
        breakers: BreakerRegistry,
        acne: AcneDetectorClient,
        redness: RednessDetectorClient,
        wrinkles: WrinklesDetectorClient,
        image_fetcher: ImageFetcher,
        recommendations: RecommendationClient | None = None,
        queue: RedisJobQueue | None = None,
        acne_retry: RetryPolicy | None = None,
        wrinkles_retry: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings
        self._cache = cache
        self._limiter = limiter
        self._breakers = breakers
        self._acne = acne
        self._redness = redness
        self._wrinkles = wrinkles
        self._fetcher = image_fetcher
        self._recommendations = recommendations
        self._queue = queue
        self._acne_retry = acne_retry or RetryPolicy(retries=settings.acne.retries)
        self._wrinkles_retry = wrinkles_retry or RetryPolicy(retries=settings.wrinkles.retries)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, payload: Any, identity: str) -> InferenceOutcome:
        """Process one /infer request.

        Args:
            payload: Raw JSON body.
            identity: Rate-limit identity of the caller.

        Returns:
            InferenceOutcome; never raises.
        """
        t_start = time.perf_counter()

        limit = await self._limiter.check_and_increment(
            identity, self._settings.rate_limit, self._settings.rate_limit_window
        )
        headers = rate_limit_headers(limit)
        if not limit.allowed:
            record_rate_limited()
            retry_after = max(0, int((limit.reset_at - datetime.now(timezone.utc)).total_seconds()))
            return InferenceOutcome(
                status_code=429,
                body={
                    "error": "Too Many Requests",
                    "message": "Rate limit exceeded, try again later",
                    "retryAfter": retry_after,
                },
                headers=headers,
                label="rate_limited",
            )

        try:
            request = InferRequest.model_validate(payload if payload is not None else {})
            image_url = validate_image_url(
                request.image_url,
                production=self._settings.is_production,
                trusted_suffixes=self._settings.trusted_storage_suffixes,
            )
        except ValidationError as exc:
            logger.warning("Validation failed: %s", exc)
            return self._invalid("Validation Error", validation_message(exc), headers)
        except ImageValidationError as exc:
            logger.warning("Image URL rejected: %s", exc.message)
            return self._invalid(exc.error, exc.message, headers)

        try:
            if not request.sync and self._queue is not None:
                job_id = await self._enqueue(request, image_url)
                if job_id is not None:
                    return InferenceOutcome(
                        status_code=202,
                        body={"message": QUEUED_MESSAGE, "jobId": job_id, "status": "queued"},
                        headers=headers,
                        label="queued",
                    )
            return await self._process(request, image_url, headers, t_start)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Inference failed for %s: %s", image_url, exc)
            return await self._recover(image_url, headers, t_start)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _process(
        self,
        request: InferRequest,
        image_url: str,
        headers: dict[str, str],
        t_start: float,
    ) -> InferenceOutcome:
        key = inference_cache_key(image_url)
        cached = await self._cache.get(key)
        if cached is not None:
            logger.info("Cache hit for %s", key)
            result = _analysis_only(cached)
            result = await self._maybe_enrich(request, result)
            return self._respond(result, "HIT", headers, t_start)

        image_base64 = await self._fetch_image(image_url)
        acne_result, redness_raw, wrinkles_raw = await asyncio.gather(
            self._run_acne(image_url),
            self._run_redness(image_base64),
            self._run_wrinkles(image_base64),
        )

        result = merge_results(
            acne_result.value,
            redness_raw,
            wrinkles_raw,
            fallback=acne_result.fallback_used,
            message=acne_result.value.get("message"),
        )

        # Only the image analysis is cached; recommendations are per caller.
        if acne_result.fallback_used:
            logger.warning("Acne fallback used (%s), result not cached", acne_result.error)
        else:
            await self._cache.set(key, result, ttl_seconds=self._settings.cache_ttl_seconds)

        result = await self._maybe_enrich(request, result)
        cache_status = "FALLBACK" if acne_result.fallback_used else "MISS"
        return self._respond(result, cache_status, headers, t_start)

    async def _enqueue(self, request: InferRequest, image_url: str) -> str | None:
        try:
            return await self._queue.enqueue(
                image_url, user_id=request.user_id, webhook_url=request.webhook_url
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Enqueue failed (%s), processing synchronously", exc)
            return None

    async def _maybe_enrich(self, request: InferRequest, result: dict[str, Any]) -> dict[str, Any]:
        if not request.include_recommendations or self._recommendations is None:
            return result
        return await self._recommendations.enrich(result, request.user_profile())

    async def _fetch_image(self, image_url: str) -> str | None:
        try:
            return await self._fetcher.fetch_base64(image_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Image fetch failed for %s: %s", image_url, exc)
            return None

    async def _run_acne(self, image_url: str) -> CallResult:
        breaker = self._breakers.get(ACNE)
        try:
            if not self._acne.configured:
                value = await breaker.run_fallback(image_url)
                return CallResult(value=value, fallback_used=True, error="acne detector not configured")
            return await self._acne_retry.run(
                breaker,
                self._acne.detect,
                image_url,
                on_failed_attempt=_retry_hook(ACNE),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Acne branch failed without fallback: %s", exc)
            return CallResult(value=acne_sentinel(), fallback_used=True, error=str(exc))

    async def _run_redness(self, image_base64: str | None) -> dict[str, Any]:
        if image_base64 is None:
            return redness_sentinel("image unavailable")
        try:
            return await asyncio.wait_for(
                self._redness.detect(image_base64),
                timeout=self._settings.redness.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Redness detector timed out")
            return redness_sentinel(
                f"timeout after {self._settings.redness.timeout_seconds:.1f}s"
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Redness detector failed: %s", exc)
            return redness_sentinel(str(exc) or type(exc).__name__)

    async def _run_wrinkles(self, image_base64: str | None) -> dict[str, Any]:
        if image_base64 is None:
            return wrinkles_sentinel("image unavailable")
        if not self._wrinkles.configured:
            return wrinkles_sentinel("wrinkles detector not configured")
        try:
            result = await self._wrinkles_retry.run(
                self._breakers.get(WRINKLES),
                self._wrinkles.detect,
                image_base64,
                on_failed_attempt=_retry_hook(WRINKLES),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Wrinkles branch failed without fallback: %s", exc)
            return wrinkles_sentinel(str(exc))
        if result.fallback_used and result.error:
            return {**result.value, "error": result.error}
        return result.value

    async def _recover(
        self, image_url: str, headers: dict[str, str], t_start: float
    ) -> InferenceOutcome:
        breaker = self._breakers.get(ACNE) if ACNE in self._breakers else None
        if breaker is not None and breaker.is_open:
            try:
                acne_raw = await breaker.run_fallback(image_url)
                result = merge_results(
                    acne_raw,
                    redness_sentinel("skipped"),
                    wrinkles_sentinel(),
                    fallback=True,
                    message=acne_raw.get("message"),
                )
                return self._respond(result, "FALLBACK", headers, t_start)
            except Exception as exc:  # noqa: BLE001
                logger.error("Fallback reconstruction failed: %s", exc)

        return InferenceOutcome(
            status_code=503,
            body={
                "error": "Service Unavailable",
                "message": "Inference service temporarily unavailable",
                "retryAfter": RETRY_AFTER_SECONDS,
            },
            headers=headers,
            label="error",
        )

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    @staticmethod
    def _invalid(error: str, message: str, headers: dict[str, str]) -> InferenceOutcome:
        return InferenceOutcome(
            status_code=400,
            body={"error": error, "message": message},
            headers=headers,
            label="invalid",
        )

    @staticmethod
    def _respond(
        result: Mapping[str, Any],
        cache_status: str,
        headers: dict[str, str],
        t_start: float,
    ) -> InferenceOutcome:
        processing_ms = round((time.perf_counter() - t_start) * 1000, 2)
        body = dict(result)
        body["meta"] = {"cache": cache_status, "processing_ms": processing_ms}
        return InferenceOutcome(
            status_code=200,
            body=body,
            headers={**headers, "X-Cache": cache_status},
            label=cache_status.lower(),
        )
