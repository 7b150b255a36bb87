"""Exponential backoff retry around breaker-guarded detector calls.

A transient detector timeout must not surface as an error: the policy retries
the call with jittered exponential backoff and, once the attempts are spent,
hands over to the breaker's fallback strategy.

An OPEN breaker short-circuits the whole sequence: ``CircuitOpenError`` is not
retried and the fallback is returned immediately, with no backoff sleep.

Usage::

    from infrastructure.retry import RetryPolicy

    policy = RetryPolicy(retries=3)
    result = await policy.run(acne_breaker, client.detect, image_url)
    if result.fallback_used:
        ...  # degraded value, do not cache
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from infrastructure.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

FailedAttemptHook = Callable[[int, int, Exception], None]


@dataclass(frozen=True)
class CallResult:
    """Value produced by a guarded call.

    Attributes:
        value: Detector result or fallback value.
        fallback_used: True if ``value`` came from the fallback strategy.
        error: Message of the last error when the fallback was used.
        attempts: Number of attempts actually made (0 when rejected up front).
    """

    value: Any
    fallback_used: bool = False
    error: str | None = None
    attempts: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Attributes:
        retries: Retries after the first attempt (total attempts = retries + 1).
        base_seconds: Wait before the first retry (default: 1.0).
        factor: Backoff multiplier (default: 2.0).
        max_seconds: Maximum wait cap in seconds (default: 10.0).
        jitter: Add random jitter ±25% to avoid thundering herd (default: True).
        exceptions: Exception types that trigger a retry.
    """

    retries: int = 3
    base_seconds: float = 1.0
    factor: float = 2.0
    max_seconds: float = 10.0
    jitter: bool = True
    exceptions: tuple[type[Exception], ...] = (Exception,)

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.retries < 0:
            raise ValueError(f"retries must be non-negative, got {self.retries}")
        if self.base_seconds < 0:
            raise ValueError(f"base_seconds must be non-negative, got {self.base_seconds}")

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first try."""
        return self.retries + 1

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        wait = min(self.base_seconds * (self.factor ** (attempt - 1)), self.max_seconds)
        if self.jitter:
            wait *= 1 + random.uniform(-0.25, 0.25)  # noqa: S311
        return max(0.0, wait)

    async def run(
        self,
        breaker: CircuitBreaker,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        on_failed_attempt: FailedAttemptHook | None = None,
        **kwargs: Any,
    ) -> CallResult:
        """Call ``func`` through ``breaker`` with retries, then fall back.

        Args:
            breaker: Circuit breaker guarding the dependency.
            func: Async callable to invoke.
            *args: Positional arguments forwarded to func (and to the fallback).
            on_failed_attempt: Called as ``hook(attempt, retries_left, exc)``
                after every failed attempt.
            **kwargs: Keyword arguments forwarded to func (and to the fallback).

        Returns:
            CallResult with the detector value, or the fallback value.

        Raises:
            Exception: The last error, when the breaker has no fallback.
        """
        last_exc: Exception | None = None
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await breaker.call(func, *args, **kwargs)
                return CallResult(value=value, attempts=attempt)
            except CircuitOpenError as exc:
                last_exc = exc
                logger.warning("retry: %s rejected (%s) — skipping retries", breaker.name, exc)
                break
            except self.exceptions as exc:
                last_exc = exc
                attempts = attempt
                retries_left = self.max_attempts - attempt
                if on_failed_attempt is not None:
                    on_failed_attempt(attempt, retries_left, exc)
                if retries_left == 0:
                    break
                wait = self.backoff(attempt)
                logger.warning(
                    "retry: %s attempt %d/%d failed (%s) — retrying in %.2fs",
                    breaker.name,
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)

        if not breaker.has_fallback and last_exc is not None:
            raise last_exc

        logger.warning("retry: %s exhausted — using fallback (%s)", breaker.name, last_exc)
        value = await breaker.run_fallback(*args, **kwargs)
        return CallResult(
            value=value,
            fallback_used=True,
            error=str(last_exc) if last_exc else None,
            attempts=attempts,
        )
