"""Circuit breaker for the external detector APIs.

Prevents one degraded detector from stalling every request. The breaker has
three states:

    CLOSED    — Normal operation. Calls pass through; every outcome is recorded
                into a rolling time window.
    OPEN      — Dependency is failing. Calls are rejected immediately without
                touching the network. Waits ``reset_timeout_seconds`` before
                probing.
    HALF-OPEN — Testing recovery. Exactly one probe call is allowed through.
                If it succeeds → CLOSED. If it fails → back to OPEN.

State machine::

    CLOSED ──(error % > threshold in window)──→ OPEN ──(reset timeout)──→ HALF-OPEN
      ↑                                                                     │
      └──────────────────────────(probe success)────────────────────────────┘
                                         └──(probe failure)──→ OPEN

Every call carries its own deadline (``timeout_seconds``). A call that
overruns it is cancelled and counted as a failure with outcome ``timeout``.

The breaker knows nothing about logging formats or metrics backends:
transitions and outcomes are pushed to ``CircuitBreakerListener`` objects.
A fallback strategy (``BreakerFallback``) can be attached at construction;
it takes the same arguments as the wrapped call and is run by the retry
policy once a call is rejected or fails terminally.

Usage::

    from infrastructure.circuit_breaker import CircuitBreaker, CircuitOpenError

    breaker = CircuitBreaker(name="acne", timeout_seconds=10.0)

    try:
        result = await breaker.call(client.detect, image_url)
    except CircuitOpenError:
        result = await breaker.run_fallback(image_url)
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker state machine states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CallOutcome(Enum):
    """Result of a single call through the breaker."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    REJECTED = "rejected"


class CircuitOpenError(Exception):
    """Raised when a call is attempted while the circuit is OPEN.

    This is NOT a dependency error — the breaker short-circuited the call.
    Callers should convert it to a fallback rather than retrying.

    Args:
        name: Circuit breaker name for context.
        reset_in_seconds: Approximate seconds until the circuit will probe again.
    """

    def __init__(self, name: str, reset_in_seconds: float) -> None:
        """Initialize with breaker name and time-to-reset."""
        self.name = name
        self.reset_in_seconds = reset_in_seconds
        super().__init__(
            f"Circuit '{name}' is OPEN — service unavailable. "
            f"Will probe again in ~{reset_in_seconds:.0f}s."
        )


class CircuitBreakerListener(Protocol):
    """Observer for breaker activity. Called synchronously by the breaker."""

    def on_state_change(self, name: str, old_state: str, new_state: str) -> None: ...

    def on_outcome(self, name: str, outcome: str, latency_seconds: float) -> None: ...


class BreakerFallback(Protocol):
    """Fallback strategy. Receives the wrapped call's arguments."""

    def __call__(self, *args: Any, **kwargs: Any) -> Awaitable[Any]: ...


@dataclass
class CircuitStats:
    """Runtime statistics for a circuit breaker instance."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    timeouts: int = 0
    rejected_calls: int = 0  # calls rejected because circuit was OPEN
    state_changes: list[tuple[str, float]] = field(default_factory=list)

    def record_state_change(self, new_state: CircuitState) -> None:
        """Record a state transition with timestamp."""
        self.state_changes.append((new_state.value, time.time()))


class _RollingWindow:
    """Success/failure counts over the last ``window_seconds``, in time buckets."""

    def __init__(self, window_seconds: float, buckets: int) -> None:
        self._bucket_seconds = window_seconds / buckets
        self._buckets: deque[list[float]] = deque(maxlen=buckets)  # [start, ok, failed]

    def _current(self, now: float) -> list[float]:
        if not self._buckets or now - self._buckets[-1][0] >= self._bucket_seconds:
            self._buckets.append([now, 0, 0])
        return self._buckets[-1]

    def record(self, failed: bool, now: float) -> None:
        bucket = self._current(now)
        bucket[2 if failed else 1] += 1

    def totals(self, now: float) -> tuple[int, int]:
        """Return (total_calls, failed_calls) within the window."""
        horizon = now - self._bucket_seconds * (self._buckets.maxlen or 1)
        total = failed = 0
        for start, ok, bad in self._buckets:
            if start > horizon:
                total += int(ok + bad)
                failed += int(bad)
        return total, failed

    def clear(self) -> None:
        self._buckets.clear()


class CircuitBreaker:
    """Async circuit breaker with a rolling error-percentage window.

    Args:
        name: Human-readable name for logging, metrics and errors.
        timeout_seconds: Per-call deadline (default: 10s).
        error_threshold_percentage: Trip when the window's error rate exceeds
            this (default: 50).
        reset_timeout_seconds: How long to stay OPEN before probing
            (default: 30s).
        rolling_window_seconds: Length of the statistics window (default: 10s).
        rolling_buckets: Number of buckets the window is split into (default: 10).
        volume_threshold: Minimum calls in the window before the error rate
            is evaluated (default: 1).
        fallback: Optional fallback strategy, same signature as the wrapped call.
        listeners: Observers notified of transitions and call outcomes.
        exceptions: Exception types that count as failures.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        name: str,
        *,
        timeout_seconds: float = 10.0,
        error_threshold_percentage: float = 50.0,
        reset_timeout_seconds: float = 30.0,
        rolling_window_seconds: float = 10.0,
        rolling_buckets: int = 10,
        volume_threshold: int = 1,
        fallback: BreakerFallback | None = None,
        listeners: Iterable[CircuitBreakerListener] = (),
        exceptions: tuple[type[Exception], ...] = (Exception,),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0 <= error_threshold_percentage <= 100:
            raise ValueError(
                f"error_threshold_percentage must be in [0, 100], got {error_threshold_percentage}"
            )
        if rolling_buckets <= 0:
            raise ValueError(f"rolling_buckets must be positive, got {rolling_buckets}")
        self.name = name
        self._timeout = timeout_seconds
        self._threshold = error_threshold_percentage
        self._reset_timeout = reset_timeout_seconds
        self._volume_threshold = volume_threshold
        self._fallback = fallback
        self._listeners = list(listeners)
        self._tracked_exceptions = exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window = _RollingWindow(rolling_window_seconds, rolling_buckets)
        self._opened_at: float = 0.0
        self._last_transition_at: float = clock()
        self._probe_in_flight = False
        self._lock = threading.Lock()
        self.stats = CircuitStats()

        logger.info(
            "CircuitBreaker '%s' initialized (threshold=%.0f%%, timeout=%.1fs, reset=%.0fs)",
            name,
            error_threshold_percentage,
            timeout_seconds,
            reset_timeout_seconds,
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """True if circuit is OPEN (rejecting calls)."""
        return self.state == CircuitState.OPEN

    @property
    def has_fallback(self) -> bool:
        """True if a fallback strategy was configured."""
        return self._fallback is not None

    def add_listener(self, listener: CircuitBreakerListener) -> None:
        """Register an additional observer."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Notifications — listeners must never break the breaker
    # ------------------------------------------------------------------

    def _notify_state(self, old: CircuitState, new: CircuitState) -> None:
        for listener in self._listeners:
            try:
                listener.on_state_change(self.name, old.value, new.value)
            except Exception as exc:  # noqa: BLE001
                logger.warning("CircuitBreaker '%s' listener error: %s", self.name, exc)

    def _notify_outcome(self, outcome: CallOutcome, latency: float) -> None:
        for listener in self._listeners:
            try:
                listener.on_outcome(self.name, outcome.value, latency)
            except Exception as exc:  # noqa: BLE001
                logger.warning("CircuitBreaker '%s' listener error: %s", self.name, exc)

    # ------------------------------------------------------------------
    # State transitions — must be called with lock held
    # ------------------------------------------------------------------

    def _transition_to(self, new_state: CircuitState) -> tuple[CircuitState, CircuitState]:
        old_state = self._state
        self._state = new_state
        self._last_transition_at = self._clock()
        self.stats.record_state_change(new_state)
        if new_state == CircuitState.OPEN:
            self._opened_at = self._last_transition_at
        elif new_state == CircuitState.CLOSED:
            self._window.clear()
        return old_state, new_state

    def _should_trip(self, now: float) -> bool:
        total, failed = self._window.totals(now)
        if total < self._volume_threshold or total == 0:
            return False
        return (failed / total) * 100 > self._threshold

    def _before_call(self) -> tuple[bool, tuple[CircuitState, CircuitState] | None]:
        """Admission check. Returns (is_probe, transition)."""
        now = self._clock()
        self.stats.total_calls += 1
        if self._state == CircuitState.OPEN:
            if now - self._opened_at >= self._reset_timeout:
                transition = self._transition_to(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True, transition
            self.stats.rejected_calls += 1
            raise CircuitOpenError(self.name, max(0.0, self._reset_timeout - (now - self._opened_at)))
        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self.stats.rejected_calls += 1
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True
            return True, None
        return False, None

    def _after_call(
        self, is_probe: bool, outcome: CallOutcome | None
    ) -> tuple[CircuitState, CircuitState] | None:
        if outcome is None:
            # Untracked exception: not a dependency failure, only release the probe slot.
            if is_probe:
                self._probe_in_flight = False
            return None
        now = self._clock()
        failed = outcome != CallOutcome.SUCCESS
        if outcome == CallOutcome.SUCCESS:
            self.stats.successful_calls += 1
        elif outcome == CallOutcome.TIMEOUT:
            self.stats.timeouts += 1
            self.stats.failed_calls += 1
        else:
            self.stats.failed_calls += 1

        if is_probe:
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                return self._transition_to(CircuitState.OPEN if failed else CircuitState.CLOSED)
            return None

        self._window.record(failed, now)
        if failed and self._state == CircuitState.CLOSED and self._should_trip(now):
            return self._transition_to(CircuitState.OPEN)
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute a coroutine function through the circuit breaker.

        Args:
            func: Async callable to protect (e.g. ``client.detect``).
            *args: Positional arguments forwarded to func.
            **kwargs: Keyword arguments forwarded to func.

        Returns:
            The return value of func.

        Raises:
            CircuitOpenError: If the circuit is OPEN (call was not attempted).
            TimeoutError: If func exceeded ``timeout_seconds``.
            Exception: Any exception raised by func (recorded as failure).
        """
        try:
            with self._lock:
                is_probe, transition = self._before_call()
        except CircuitOpenError:
            self._notify_outcome(CallOutcome.REJECTED, 0.0)
            raise
        if transition:
            self._notify_state(*transition)

        # Execute outside the lock; state is re-checked when the outcome is recorded.
        started = time.perf_counter()
        outcome: CallOutcome | None = None
        try:
            result = await asyncio.wait_for(func(*args, **kwargs), timeout=self._timeout)
            outcome = CallOutcome.SUCCESS
            return result
        except asyncio.TimeoutError:
            outcome = CallOutcome.TIMEOUT
            raise TimeoutError(
                f"Circuit '{self.name}' call exceeded {self._timeout:.1f}s"
            ) from None
        except self._tracked_exceptions:
            outcome = CallOutcome.FAILURE
            raise
        finally:
            latency = time.perf_counter() - started
            with self._lock:
                transition = self._after_call(is_probe, outcome)
            if outcome is not None:
                self._notify_outcome(outcome, latency)
            if transition:
                self._notify_state(*transition)

    async def run_fallback(self, *args: Any, **kwargs: Any) -> Any:
        """Run the configured fallback strategy with the wrapped call's arguments.

        Raises:
            RuntimeError: If no fallback was configured.
        """
        if self._fallback is None:
            raise RuntimeError(f"Circuit '{self.name}' has no fallback configured")
        return await self._fallback(*args, **kwargs)

    def reset(self) -> None:
        """Manually force circuit to CLOSED state (e.g. after maintenance).

        Useful in tests and admin endpoints.
        """
        with self._lock:
            self._probe_in_flight = False
            transition = self._transition_to(CircuitState.CLOSED)
        self._notify_state(*transition)

    def status(self) -> dict[str, Any]:
        """Return a snapshot of the circuit breaker status.

        Returns:
            Dict with state, window counts, stats, and config.
        """
        with self._lock:
            now = self._clock()
            total, failed = self._window.totals(now)
            return {
                "name": self.name,
                "state": self._state.value,
                "window_calls": total,
                "window_failures": failed,
                "error_threshold_percentage": self._threshold,
                "timeout_seconds": self._timeout,
                "reset_timeout_seconds": self._reset_timeout,
                "seconds_since_transition": round(now - self._last_transition_at, 1),
                "stats": {
                    "total": self.stats.total_calls,
                    "success": self.stats.successful_calls,
                    "failed": self.stats.failed_calls,
                    "timeouts": self.stats.timeouts,
                    "rejected": self.stats.rejected_calls,
                },
            }


class BreakerRegistry:
    """Process-wide set of circuit breakers, keyed by dependency name.

    Built once by the composition root and passed by reference to whatever
    needs a breaker, so failure statistics accumulate across requests.
    """

    def __init__(self, breakers: Iterable[CircuitBreaker] = ()) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        for breaker in breakers:
            self.register(breaker)

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        """Add a breaker. Names must be unique."""
        if breaker.name in self._breakers:
            raise ValueError(f"Circuit breaker {breaker.name!r} already registered")
        self._breakers[breaker.name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        """Return the breaker for ``name``.

        Raises:
            KeyError: If no breaker with that name is registered.
        """
        return self._breakers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def status(self) -> list[dict[str, Any]]:
        """Status snapshots for every registered breaker."""
        return [b.status() for b in self._breakers.values()]
