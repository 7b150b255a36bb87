"""Prometheus metrics for the inference orchestrator.

Metrics:
    sio_infer_requests_total           Counter by status (hit/miss/fallback/queued/...)
    sio_infer_latency_seconds          Histogram of end-to-end /infer latency
    sio_cache_hits_total               Counter of cache hits by tier (redis/local)
    sio_cache_misses_total             Counter of cache misses
    sio_rate_limited_total             Requests rejected by rate limiter
    sio_circuit_breaker_transitions_total  Breaker state changes by breaker and new state
    sio_circuit_breaker_calls_total    Breaker call outcomes by breaker and outcome
    sio_detector_retries_total         Failed detector attempts that were retried
    sio_recommendations_total          Recommendation calls by success

Breaker observability is exposed through two listener classes so the breaker
itself never imports this module:

    LoggingBreakerListener     — logs transitions and failures
    PrometheusBreakerListener  — feeds the two circuit_breaker_* counters

Usage::

    from infrastructure.metrics import LatencyTimer, record_infer

    with LatencyTimer() as t:
        outcome = await orchestrator.handle(payload, identity)
    record_infer(status="miss", latency_seconds=t.elapsed)
"""

from __future__ import annotations

import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_REGISTRY = CollectorRegistry()

infer_requests_total = Counter(
    "sio_infer_requests_total",
    "Total /infer requests by status",
    ["status"],
    registry=_REGISTRY,
)

infer_latency_seconds = Histogram(
    "sio_infer_latency_seconds",
    "End-to-end /infer latency in seconds",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=_REGISTRY,
)

cache_hits_total = Counter(
    "sio_cache_hits_total",
    "Response cache hits by tier",
    ["tier"],
    registry=_REGISTRY,
)

cache_misses_total = Counter(
    "sio_cache_misses_total",
    "Response cache misses (both tiers)",
    registry=_REGISTRY,
)

rate_limited_total = Counter(
    "sio_rate_limited_total",
    "Requests rejected by rate limiter",
    registry=_REGISTRY,
)

circuit_breaker_transitions_total = Counter(
    "sio_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["breaker_name", "state"],
    registry=_REGISTRY,
)

circuit_breaker_calls_total = Counter(
    "sio_circuit_breaker_calls_total",
    "Circuit breaker call outcomes (success/failure/timeout/rejected)",
    ["breaker_name", "outcome"],
    registry=_REGISTRY,
)

detector_retries_total = Counter(
    "sio_detector_retries_total",
    "Failed detector attempts reported by the retry policy",
    ["detector"],
    registry=_REGISTRY,
)

recommendations_total = Counter(
    "sio_recommendations_total",
    "Recommendation service calls by success",
    ["success"],
    registry=_REGISTRY,
)


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def record_infer(*, status: str, latency_seconds: float) -> None:
    """Record a completed /infer request.

    Args:
        status: One of "hit", "miss", "fallback", "queued", "rate_limited",
            "invalid", "error".
        latency_seconds: End-to-end wall-clock time in seconds.
    """
    infer_requests_total.labels(status=status).inc()
    infer_latency_seconds.observe(latency_seconds)


def record_cache_hit(tier: str) -> None:
    """Increment cache hit counter for a tier ("redis" or "local")."""
    cache_hits_total.labels(tier=tier).inc()


def record_cache_miss() -> None:
    """Increment cache miss counter."""
    cache_misses_total.inc()


def record_rate_limited() -> None:
    """Increment rate-limited requests counter."""
    rate_limited_total.inc()


def record_detector_retry(detector: str) -> None:
    """Increment the failed-attempt counter for a detector."""
    detector_retries_total.labels(detector=detector).inc()


def record_recommendations(success: bool) -> None:
    """Increment recommendation call counter."""
    recommendations_total.labels(success=str(success).lower()).inc()


def get_metrics_response() -> tuple[bytes, str]:
    """Generate Prometheus text exposition format.

    Returns:
        Tuple of (body_bytes, content_type_string).
    """
    return generate_latest(_REGISTRY), CONTENT_TYPE_LATEST


# ---------------------------------------------------------------------------
# Circuit breaker listeners
# ---------------------------------------------------------------------------


class LoggingBreakerListener:
    """Writes breaker transitions and non-success outcomes to the log."""

    def on_state_change(self, name: str, old_state: str, new_state: str) -> None:
        if new_state == "open":
            logger.warning("CircuitBreaker '%s': %s → OPEN", name, old_state.upper())
        else:
            logger.info("CircuitBreaker '%s': %s → %s", name, old_state.upper(), new_state.upper())

    def on_outcome(self, name: str, outcome: str, latency_seconds: float) -> None:
        if outcome == "success":
            logger.debug("CircuitBreaker '%s' success in %.3fs", name, latency_seconds)
        elif outcome == "rejected":
            logger.warning("CircuitBreaker '%s' rejected request", name)
        else:
            logger.warning(
                "CircuitBreaker '%s' %s after %.3fs", name, outcome, latency_seconds
            )


class PrometheusBreakerListener:
    """Feeds breaker transitions and outcomes into Prometheus counters."""

    def on_state_change(self, name: str, old_state: str, new_state: str) -> None:
        circuit_breaker_transitions_total.labels(breaker_name=name, state=new_state).inc()

    def on_outcome(self, name: str, outcome: str, latency_seconds: float) -> None:
        circuit_breaker_calls_total.labels(breaker_name=name, outcome=outcome).inc()


class LatencyTimer:
    """Context manager for measuring latency.

    Usage::

        with LatencyTimer() as t:
            result = await run_pipeline()
        record_infer(status="miss", latency_seconds=t.elapsed)
    """

    def __init__(self) -> None:
        """Initialize timer."""
        self._start: float = 0.0
        self.elapsed: float = 0.0

    def __enter__(self) -> LatencyTimer:
        """Start timing."""
        self._start = time.perf_counter()
        return self

    def __exit__(self, *_: object) -> None:
        """Stop timing and record elapsed."""
        self.elapsed = time.perf_counter() - self._start
