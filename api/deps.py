"""
FastAPI dependency providers.

Every shared component is built once by the application lifespan
(``api.main.lifespan``) and stored on ``app.state``. These providers read
them back per request, so tests can swap any of them through
``app.dependency_overrides``.
"""

from typing import Any

from fastapi import Request

from core.config import Settings
from inference.orchestrator import InferenceOrchestrator
from infrastructure.cache import ResponseCache
from infrastructure.circuit_breaker import BreakerRegistry


def get_settings(request: Request) -> Settings:
    """Return the process settings."""
    return request.app.state.settings


def get_orchestrator(request: Request) -> InferenceOrchestrator:
    """Return the shared inference orchestrator."""
    return request.app.state.orchestrator


def get_response_cache(request: Request) -> ResponseCache:
    """Return the two-tier response cache."""
    return request.app.state.cache


def get_breakers(request: Request) -> BreakerRegistry:
    """Return the circuit breaker registry.

    Shared across all requests so failure windows accumulate across the
    lifetime of the server process.
    """
    return request.app.state.breakers


def get_redis(request: Request) -> Any:
    """Return the Redis client, or None when running without Redis."""
    return request.app.state.redis
