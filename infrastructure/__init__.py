"""Infrastructure layer — resilience patterns for the inference orchestrator.

Modules:
    cache            Two-tier (Redis + local) response cache with TTL and invalidation.
    retry            Exponential backoff retry policy composed around a breaker.
    rate_limiter     Per-client fixed-window rate limiter.
    circuit_breaker  Circuit breaker, listener interface and breaker registry.
    metrics          Prometheus metrics registry and breaker listeners.
    redis_client     Shared async Redis connection helper.
"""
